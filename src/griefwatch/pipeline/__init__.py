"""
Griefwatch Pipeline - Analysis orchestration.

Runs every detector over one timeline with failure isolation and throttled
progress notifications.
"""

from griefwatch.pipeline.orchestrator import (
    AnalysisOrchestrator,
    AnalysisResults,
    EmptyTimelineError,
    ProgressUpdate,
    analyze_timeline,
)

__all__ = [
    "AnalysisOrchestrator",
    "AnalysisResults",
    "EmptyTimelineError",
    "ProgressUpdate",
    "analyze_timeline",
]
