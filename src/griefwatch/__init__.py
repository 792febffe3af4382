"""
Griefwatch - Grief Detection for CS2 Demos

Explainable heuristic flagging of disruptive behavior in decoded Counter-Strike 2
match timelines: AFK players, team kills and damage, team flashes, disconnects,
and (experimental) mid-round inactivity, body blocking, objective sabotage and
economy griefing. Every finding is advisory and meant for human review.

Usage:
    from griefwatch import load_timeline, analyze_timeline

    timeline = load_timeline("match.timeline.json")
    results = analyze_timeline(timeline)

    for afk in results.afk_detections:
        print(f"{afk.player_name}: AFK {afk.afk_duration:.1f}s in round {afk.round}")
"""

__version__ = "0.1.0"
__author__ = "Griefwatch Contributors"


def __getattr__(name):
    """Lazy import for heavy dependencies."""
    # Timeline
    if name == "Timeline":
        from griefwatch.core.timeline import Timeline
        return Timeline
    elif name == "load_timeline":
        from griefwatch.core.timeline import load_timeline
        return load_timeline
    # Config
    elif name == "GriefwatchConfig":
        from griefwatch.core.config import GriefwatchConfig
        return GriefwatchConfig
    elif name == "load_config":
        from griefwatch.core.config import load_config
        return load_config
    # Pipeline
    elif name == "AnalysisOrchestrator":
        from griefwatch.pipeline.orchestrator import AnalysisOrchestrator
        return AnalysisOrchestrator
    elif name == "AnalysisResults":
        from griefwatch.pipeline.orchestrator import AnalysisResults
        return AnalysisResults
    elif name == "analyze_timeline":
        from griefwatch.pipeline.orchestrator import analyze_timeline
        return analyze_timeline
    elif name == "export_results":
        from griefwatch.export import export_results
        return export_results
    raise AttributeError(f"module 'griefwatch' has no attribute '{name}'")


__all__ = [
    # Version
    "__version__",
    # Timeline
    "Timeline",
    "load_timeline",
    # Config
    "GriefwatchConfig",
    "load_config",
    # Pipeline
    "AnalysisOrchestrator",
    "AnalysisResults",
    "analyze_timeline",
    "export_results",
]
