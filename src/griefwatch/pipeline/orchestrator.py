"""
Analysis Orchestrator - Runs every detector over one timeline.

Detectors are independent; each one only reads the shared Timeline. The
orchestrator runs them in a fixed order, isolates their failures (a detector
that raises contributes an empty category and an entry in ``failures``), and
reports throttled progress notifications between phases.

Two entry points:
- ``run()`` executes everything and returns the ``AnalysisResults``
- ``iter_analysis()`` is a generator yielding ``ProgressUpdate`` between
  phases, so a host event loop can repaint; its return value is the results
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from typing import Any

from griefwatch.core.config import GriefwatchConfig
from griefwatch.core.timeline import Timeline, TimelineError
from griefwatch.core.utils import PerformanceMonitor, camel_case, record_to_dict
from griefwatch.domains.afk import AFKDetection, AFKDetector
from griefwatch.domains.body_blocking import BodyBlockDetector, BodyBlockRoundResult
from griefwatch.domains.disconnects import DisconnectDetector, DisconnectReconnect
from griefwatch.domains.economy import EconomyGriefingDetector, EconomyPlayerResult
from griefwatch.domains.friendly_fire import FriendlyFireDetector, TeamDamage, TeamKill
from griefwatch.domains.inactivity import InactivityDetector, InactivityResult
from griefwatch.domains.objective import ObjectiveResult, ObjectiveSabotageDetector
from griefwatch.domains.team_flash import TeamFlash, TeamFlashDetector

logger = logging.getLogger(__name__)

CORE_CATEGORIES = ("afk_detections", "team_kills", "team_damage", "disconnects", "team_flashes")
EXPERIMENTAL_CATEGORIES = ("mid_round_inactivity", "body_blocking", "objective_sabotage", "economy_griefing")

# Experimental categories hold per-round or per-player records; findings sit under these attributes
FINDING_PATHS: dict[str, tuple[str, ...]] = {
    "mid_round_inactivity": ("segments",),
    "body_blocking": ("events",),
    "objective_sabotage": ("players", "events"),
    "economy_griefing": ("events",),
}

HUMAN_REVIEW_ADVISORY = (
    "All findings are heuristic and advisory. Verify each one by watching the replay "
    "before taking any moderation action."
)


class EmptyTimelineError(TimelineError):
    """Raised when there is nothing to analyze: no timeline, or no frames."""


# ============================================================================
# Progress
# ============================================================================


@dataclass
class ProgressUpdate:
    percentage: float
    current_step: str
    estimated_time_remaining: float  # seconds

    def to_dict(self) -> dict:
        return record_to_dict(self)


ProgressCallback = Callable[[ProgressUpdate], None]


class ProgressReporter:
    """
    Throttled, monotonic progress notifications.

    At most one update per ``throttle_ms``; the final 100% update always goes
    out. Percentages never decrease.
    """

    def __init__(
        self,
        callback: ProgressCallback | None = None,
        throttle_ms: float = 100.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.callback = callback
        self.throttle_ms = throttle_ms
        self.clock = clock
        self._started = clock()
        self._last_emit: float | None = None
        self._last_percentage = 0.0

    def report(self, percentage: float, step: str) -> ProgressUpdate | None:
        percentage = max(self._last_percentage, min(100.0, max(0.0, percentage)))
        now = self.clock()
        if (
            self._last_emit is not None
            and (now - self._last_emit) * 1000.0 < self.throttle_ms
            and percentage < 100.0
        ):
            return None

        elapsed = now - self._started
        remaining = elapsed / (percentage / 100.0) - elapsed if percentage > 0 else 0.0
        update = ProgressUpdate(percentage=percentage, current_step=step, estimated_time_remaining=remaining)
        self._last_emit = now
        self._last_percentage = percentage
        if self.callback is not None:
            self.callback(update)
        return update


# ============================================================================
# Results
# ============================================================================


@dataclass
class AnalysisResults:
    """One ordered list of findings per detector. Experimental lists are None when disabled."""

    afk_detections: list[AFKDetection] = field(default_factory=list)
    team_kills: list[TeamKill] = field(default_factory=list)
    team_damage: list[TeamDamage] = field(default_factory=list)
    disconnects: list[DisconnectReconnect] = field(default_factory=list)
    team_flashes: list[TeamFlash] = field(default_factory=list)
    mid_round_inactivity: list[InactivityResult] | None = None
    body_blocking: list[BodyBlockRoundResult] | None = None
    objective_sabotage: list[ObjectiveResult] | None = None
    economy_griefing: list[EconomyPlayerResult] | None = None
    failures: dict[str, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def categories(self) -> dict[str, list[Any]]:
        """Populated categories in output order."""
        found = {}
        for name in CORE_CATEGORIES + EXPERIMENTAL_CATEGORIES:
            records = getattr(self, name)
            if records is not None:
                found[name] = records
        return found

    def counts(self) -> dict[str, int]:
        """Individual findings per populated category."""
        return {
            name: _count_findings(records, FINDING_PATHS.get(name, ()))
            for name, records in self.categories().items()
        }

    @property
    def total_findings(self) -> int:
        return sum(self.counts().values())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            camel_case(name): [record.to_dict() for record in records]
            for name, records in self.categories().items()
        }
        data["failures"] = dict(self.failures)
        return data


def _count_findings(records: list[Any], path: tuple[str, ...]) -> int:
    if not path:
        return len(records)
    return sum(_count_findings(getattr(record, path[0]), path[1:]) for record in records)


# ============================================================================
# Orchestrator
# ============================================================================


class AnalysisOrchestrator:
    def __init__(
        self,
        timeline: Timeline | None,
        config: GriefwatchConfig | None = None,
        *,
        progress_callback: ProgressCallback | None = None,
        enable_experimental: bool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeline = timeline
        self.config = config or GriefwatchConfig()
        self.progress_callback = progress_callback
        self.enable_experimental = (
            self.config.enable_experimental if enable_experimental is None else enable_experimental
        )
        self.clock = clock

    def run(self) -> AnalysisResults:
        """Run the full analysis, discarding the progress stream."""
        steps = self.iter_analysis()
        while True:
            try:
                next(steps)
            except StopIteration as done:
                return done.value

    def iter_analysis(self) -> Generator[ProgressUpdate, None, AnalysisResults]:
        if self.timeline is None or not self.timeline.frames:
            raise EmptyTimelineError("Timeline has no frames to analyze")

        timeline = self.timeline
        config = self.config
        reporter = ProgressReporter(self.progress_callback, config.progress.throttle_ms, self.clock)
        results = AnalysisResults()
        monitor = PerformanceMonitor("analysis")

        def progress(percentage: float, step: str):
            update = reporter.report(percentage, step)
            return [update] if update is not None else []

        with monitor:
            yield from progress(0, "Starting analysis...")
            logger.info(
                f"Analyzing {timeline.map_name or 'timeline'}: {len(timeline.frames)} frames, "
                f"{len(timeline.rounds)} rounds"
            )

            yield from progress(5, "Detecting AFK players...")
            results.afk_detections = self._isolated(
                results, "afk_detections", lambda: AFKDetector(timeline, config.afk).detect(), []
            )
            yield from progress(30, f"Found {len(results.afk_detections)} AFK detections")

            friendly_fire = FriendlyFireDetector(timeline, config.friendly_fire)
            yield from progress(35, "Detecting team kills...")
            results.team_kills = self._isolated(results, "team_kills", friendly_fire.detect_team_kills, [])
            yield from progress(55, f"Found {len(results.team_kills)} team kills")

            yield from progress(60, "Detecting team damage...")
            results.team_damage = self._isolated(results, "team_damage", friendly_fire.detect_team_damage, [])
            yield from progress(80, f"Found {len(results.team_damage)} team damage events")

            yield from progress(85, "Detecting disconnects and reconnects...")
            results.disconnects = self._isolated(
                results, "disconnects", lambda: DisconnectDetector(timeline, config.disconnect).detect(), []
            )

            yield from progress(90, "Detecting team flashes...")
            results.team_flashes = self._isolated(
                results, "team_flashes", lambda: TeamFlashDetector(timeline, config.team_flash).detect(), []
            )

            if self.enable_experimental:
                yield from progress(92, "Detecting mid-round inactivity...")
                results.mid_round_inactivity = self._isolated(
                    results,
                    "mid_round_inactivity",
                    lambda: InactivityDetector(timeline, config.inactivity).detect(),
                    [],
                )
                yield from progress(94, "Detecting body blocking...")
                results.body_blocking = self._isolated(
                    results, "body_blocking", lambda: BodyBlockDetector(timeline, config.body_blocking).detect(), []
                )
                yield from progress(96, "Detecting objective sabotage...")
                results.objective_sabotage = self._isolated(
                    results,
                    "objective_sabotage",
                    lambda: ObjectiveSabotageDetector(timeline, config.objective).detect(),
                    [],
                )
                yield from progress(98, "Detecting economy griefing...")
                results.economy_griefing = self._isolated(
                    results,
                    "economy_griefing",
                    lambda: EconomyGriefingDetector(timeline, config.economy).detect().players,
                    [],
                )

        results.elapsed_seconds = monitor.elapsed
        yield from progress(100, f"Analysis complete: {results.total_findings} findings")
        if results.failures:
            logger.warning(f"Analysis finished with {len(results.failures)} failed detectors")
        return results

    @staticmethod
    def _isolated(results: AnalysisResults, name: str, detect: Callable[[], Any], default: Any) -> Any:
        try:
            return detect()
        except Exception as e:
            logger.error(f"Detector {name} failed: {e}", exc_info=True)
            results.failures[name] = str(e)
            return default


def analyze_timeline(
    timeline: Timeline,
    config: GriefwatchConfig | None = None,
    progress_callback: ProgressCallback | None = None,
    enable_experimental: bool | None = None,
) -> AnalysisResults:
    """Convenience function to run all detectors over a timeline."""
    return AnalysisOrchestrator(
        timeline, config, progress_callback=progress_callback, enable_experimental=enable_experimental
    ).run()
