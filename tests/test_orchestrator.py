"""Tests for the analysis orchestrator and progress reporting."""

import pytest

from factories import timeline
from griefwatch.core.config import GriefwatchConfig
from griefwatch.domains.body_blocking import BodyBlockRoundResult
from griefwatch.domains.economy import EconomyPlayerResult
from griefwatch.domains.objective import ObjectiveEvent, ObjectiveEventType, ObjectiveResult, PlayerObjectiveResult
from griefwatch.domains.team_flash import TeamFlashDetector
from griefwatch.pipeline.orchestrator import (
    CORE_CATEGORIES,
    EXPERIMENTAL_CATEGORIES,
    AnalysisOrchestrator,
    AnalysisResults,
    EmptyTimelineError,
    ProgressReporter,
    analyze_timeline,
)


class FakeClock:
    """Monotonic clock advancing by ``step`` seconds per call."""

    def __init__(self, step: float = 0.0):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.now
        self.now += self.step
        return current


class TestProgressReporter:
    def test_first_update_always_fires(self):
        updates = []
        reporter = ProgressReporter(updates.append, throttle_ms=100, clock=FakeClock())
        reporter.report(10, "one")
        assert [u.percentage for u in updates] == [10]

    def test_updates_inside_throttle_window_are_dropped(self):
        clock = FakeClock()
        updates = []
        reporter = ProgressReporter(updates.append, throttle_ms=100, clock=clock)

        reporter.report(10, "one")
        clock.now += 0.05
        assert reporter.report(20, "two") is None
        clock.now += 0.06
        reporter.report(30, "three")

        assert [u.current_step for u in updates] == ["one", "three"]

    def test_completion_always_fires(self):
        updates = []
        reporter = ProgressReporter(updates.append, throttle_ms=10_000, clock=FakeClock())
        reporter.report(10, "start")
        reporter.report(100, "done")
        assert [u.percentage for u in updates] == [10, 100]

    def test_percentage_is_monotonic_and_clamped(self):
        reporter = ProgressReporter(throttle_ms=0, clock=FakeClock(step=1.0))
        assert reporter.report(50, "a").percentage == 50
        assert reporter.report(40, "b").percentage == 50
        assert reporter.report(250, "c").percentage == 100

    def test_estimated_time_remaining(self):
        clock = FakeClock()
        reporter = ProgressReporter(throttle_ms=0, clock=clock)
        clock.now = 2.0
        update = reporter.report(50, "halfway")
        assert update.estimated_time_remaining == pytest.approx(2.0)

    def test_no_estimate_before_progress(self):
        reporter = ProgressReporter(throttle_ms=0, clock=FakeClock(step=1.0))
        assert reporter.report(0, "zero").estimated_time_remaining == pytest.approx(0.0)


class TestAnalysisOrchestrator:
    def test_core_run(self, stationary_round):
        results = analyze_timeline(stationary_round)

        assert len(results.afk_detections) == 1
        assert results.failures == {}
        assert list(results.categories()) == list(CORE_CATEGORIES)
        for name in EXPERIMENTAL_CATEGORIES:
            assert getattr(results, name) is None

    def test_experimental_run(self, stationary_round):
        results = analyze_timeline(stationary_round, enable_experimental=True)

        assert list(results.categories()) == list(CORE_CATEGORIES + EXPERIMENTAL_CATEGORIES)
        assert results.failures == {}

    def test_experimental_flag_from_config(self, stationary_round):
        config = GriefwatchConfig(enable_experimental=True)
        results = AnalysisOrchestrator(stationary_round, config).run()
        assert results.body_blocking is not None

    @pytest.mark.parametrize("tl", [None, timeline([])])
    def test_empty_timeline(self, tl):
        with pytest.raises(EmptyTimelineError):
            AnalysisOrchestrator(tl).run()

    def test_failing_detector_is_isolated(self, stationary_round, monkeypatch):
        def boom(self):
            raise RuntimeError("decoder garbage")

        monkeypatch.setattr(TeamFlashDetector, "detect", boom)
        results = analyze_timeline(stationary_round)

        assert results.team_flashes == []
        assert results.failures == {"team_flashes": "decoder garbage"}
        assert len(results.afk_detections) == 1
        assert results.to_dict()["failures"] == {"team_flashes": "decoder garbage"}

    def test_progress_with_stalled_clock(self, stationary_round):
        updates = []
        AnalysisOrchestrator(stationary_round, progress_callback=updates.append, clock=FakeClock()).run()
        assert [u.percentage for u in updates] == [0, 100]

    def test_progress_every_phase(self, stationary_round):
        updates = []
        AnalysisOrchestrator(
            stationary_round,
            progress_callback=updates.append,
            enable_experimental=True,
            clock=FakeClock(step=1.0),
        ).run()

        percentages = [u.percentage for u in updates]
        assert percentages == sorted(percentages)
        assert percentages[0] == 0
        assert percentages[-1] == 100
        assert 98 in percentages
        assert updates[-1].current_step.startswith("Analysis complete")

    def test_iter_analysis_yields_then_returns(self, stationary_round):
        steps = AnalysisOrchestrator(stationary_round, clock=FakeClock(step=1.0)).iter_analysis()
        yielded = []
        with pytest.raises(StopIteration) as done:
            while True:
                yielded.append(next(steps))

        assert yielded[-1].percentage == 100
        assert len(done.value.value.afk_detections) == 1

    def test_runs_are_idempotent(self, stationary_round):
        first = analyze_timeline(stationary_round, enable_experimental=True).to_dict()
        second = analyze_timeline(stationary_round, enable_experimental=True).to_dict()
        assert first == second

    def test_to_dict_keys(self, stationary_round):
        data = analyze_timeline(stationary_round).to_dict()
        assert set(data) == {"afkDetections", "teamKills", "teamDamage", "disconnects", "teamFlashes", "failures"}
        assert data["afkDetections"][0]["playerName"] == "Idle"

    def test_counts_and_total(self, stationary_round):
        results = analyze_timeline(stationary_round)
        assert results.counts()["afk_detections"] == 1
        assert results.total_findings == 1


class TestAnalysisResults:
    """Tests for counting findings inside round and player records."""

    def objective_event(self, actor_name: str) -> ObjectiveEvent:
        return ObjectiveEvent(
            type=ObjectiveEventType.DEFUSE_ABORT,
            round=2,
            start_tick=100,
            end_tick=132,
            start_time=1.5,
            end_time=2.0,
            duration=0.5,
            actor_id=3,
            actor_name=actor_name,
            confidence=0.6,
            score=0.6,
            features_summary={},
            human_reason="stopped defusing",
        )

    def test_empty_containers_are_not_findings(self):
        results = AnalysisResults(
            body_blocking=[BodyBlockRoundResult(round=1), BodyBlockRoundResult(round=2)],
            economy_griefing=[EconomyPlayerResult(player_id=1, player_name="Cal")],
            objective_sabotage=[ObjectiveResult(round=1, players=[PlayerObjectiveResult(1, 3, "Cyd")])],
        )

        assert results.counts()["body_blocking"] == 0
        assert results.counts()["economy_griefing"] == 0
        assert results.total_findings == 0

    def test_nested_events_are_counted(self):
        players = [
            PlayerObjectiveResult(2, 3, "Cyd", events=[self.objective_event("Cyd"), self.objective_event("Cyd")]),
            PlayerObjectiveResult(2, 4, "Cal", events=[self.objective_event("Cal")]),
        ]
        results = AnalysisResults(objective_sabotage=[ObjectiveResult(round=2, players=players)])

        assert results.counts()["objective_sabotage"] == 3
        assert results.total_findings == 3
