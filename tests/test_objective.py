"""Tests for experimental objective sabotage detection."""

import pytest

from factories import TICK_RATE, damage_event, event, frame, player, timeline
from griefwatch.core.config import ObjectiveConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import Round
from griefwatch.domains.objective import (
    ObjectiveEvent,
    ObjectiveEventType,
    ObjectiveSabotageDetector,
    detect_objective_sabotage,
)

FREEZE_END = 640
ROUND_SECONDS = 90


def tick_at(elapsed: float) -> int:
    return FREEZE_END + int(elapsed * TICK_RATE)


def objective_round(players_at, events_at=None, raw_events=(), seconds=ROUND_SECONDS):
    """One round sampled every 8 ticks; ``players_at(elapsed)`` returns the roster."""
    end_tick = tick_at(seconds)
    frames = []
    for tick in range(FREEZE_END, end_tick + 1, 8):
        elapsed = (tick - FREEZE_END) / TICK_RATE
        frames.append(frame(tick, players_at(elapsed), events_at(tick) if events_at else []))
    rnd = Round(number=1, start_tick=0, freeze_end_tick=FREEZE_END, end_tick=end_tick)
    return timeline(frames, [rnd], raw_events=list(raw_events))


def raw(name: str, elapsed: float, user: str) -> dict:
    return {"event_name": name, "tick": tick_at(elapsed), "user_name": user}


def events_of(results, event_type: ObjectiveEventType, actor: str | None = None) -> list[ObjectiveEvent]:
    return [
        e
        for result in results
        for e in result.events
        if e.type == event_type and (actor is None or e.actor_name == actor)
    ]


def carrier_stands_then_walks(elapsed):
    x = 0.0 if elapsed < 30.0 else 250.0 * (elapsed - 30.0)
    return [
        player(1, "Carrier", Team.T, x=x, y=0.0, has_bomb=True),
        player(2, "Mate", Team.T, x=2000.0, y=2000.0),
        player(3, "Enemy", Team.CT, x=-3000.0, y=0.0),
    ]


class TestBombCarrierStall:
    """Carrier holding the bomb without doing anything with it."""

    def test_stationary_carrier_is_flagged(self):
        results = detect_objective_sabotage(objective_round(carrier_stands_then_walks))
        stalls = events_of(results, ObjectiveEventType.BOMB_CARRIER_STALL, "Carrier")

        assert len(stalls) == 1
        stall = stalls[0]
        assert stall.start_tick == FREEZE_END
        assert stall.duration >= 30.0
        assert stall.score == pytest.approx(1.0)
        assert stall.confidence == pytest.approx(1.0)
        assert "Carried bomb for" in stall.human_reason

        player_result = results[0].players[0]
        assert player_result.player_name == "Carrier"
        assert player_result.flagged is True
        assert player_result.objective_score_round == pytest.approx(0.15)

    def test_pressure_suppresses_stall(self):
        def under_fire(tick):
            if (tick - FREEZE_END) % 128 == 0:
                return [damage_event(tick, "Enemy", "Carrier", 60)]
            return []

        results = detect_objective_sabotage(objective_round(carrier_stands_then_walks, under_fire))
        assert events_of(results, ObjectiveEventType.BOMB_CARRIER_STALL) == []

    def test_short_stall_is_ignored(self):
        def brief(elapsed):
            roster = carrier_stands_then_walks(elapsed)
            roster[0].position.x = 0.0 if elapsed < 5.0 else 250.0 * (elapsed - 5.0)
            return roster

        results = detect_objective_sabotage(objective_round(brief))
        assert events_of(results, ObjectiveEventType.BOMB_CARRIER_STALL) == []


class TestNoPlantOpportunity:
    """Carrier grouped up with teammates but never planting."""

    @staticmethod
    def grouped(elapsed):
        return [
            player(1, "Carrier", Team.T, x=0.0, y=0.0, has_bomb=True),
            player(2, "Mate", Team.T, x=100.0, y=0.0),
            player(4, "Mate2", Team.T, x=0.0, y=100.0),
            player(3, "Enemy", Team.CT, x=-3000.0, y=0.0),
        ]

    def test_grouped_carrier_without_plant(self):
        results = detect_objective_sabotage(objective_round(self.grouped))
        found = events_of(results, ObjectiveEventType.NO_PLANT_OPPORTUNITY, "Carrier")

        assert found
        first = found[0]
        assert first.duration >= 6.0
        assert first.features_summary["nearby_teammates"] == 2
        assert "didn't plant" in first.human_reason

    def test_plant_ends_the_opportunity(self):
        def plant(tick):
            return [event("plant", tick, "Carrier")] if tick == tick_at(3.0) else []

        results = detect_objective_sabotage(objective_round(self.grouped, plant))
        assert events_of(results, ObjectiveEventType.NO_PLANT_OPPORTUNITY) == []

    def test_lone_carrier_has_no_opportunity(self):
        results = detect_objective_sabotage(objective_round(carrier_stands_then_walks))
        assert events_of(results, ObjectiveEventType.NO_PLANT_OPPORTUNITY) == []


class TestBadBombDrop:
    """Unforced bomb drops."""

    @staticmethod
    def drops_at_twenty(mate_x=100.0):
        def roster(elapsed):
            return [
                player(1, "Carrier", Team.T, x=0.0, y=0.0, has_bomb=elapsed < 20.0),
                player(2, "Mate", Team.T, x=mate_x, y=0.0),
                player(3, "Enemy", Team.CT, x=-3000.0, y=0.0),
            ]

        return roster

    def test_drop_next_to_teammate(self):
        results = detect_objective_sabotage(objective_round(self.drops_at_twenty()))
        drops = events_of(results, ObjectiveEventType.BAD_BOMB_DROP, "Carrier")

        assert len(drops) == 1
        drop = drops[0]
        assert drop.start_tick == tick_at(20.0)
        assert drop.score == pytest.approx(0.7)
        assert drop.human_reason == "Dropped bomb (teammates nearby, low pressure)"

    def test_enemy_pickup_raises_score(self):
        tl = objective_round(self.drops_at_twenty(), raw_events=[raw("bomb_pickup", 21.0, "Enemy")])
        drop = events_of(detect_objective_sabotage(tl), ObjectiveEventType.BAD_BOMB_DROP)[0]

        assert drop.score == pytest.approx(1.0)
        assert drop.features_summary["enemy_pickup"] == 1
        assert "enemy picked up" in drop.human_reason

    def test_teammate_pickup_is_not_enemy_pickup(self):
        tl = objective_round(self.drops_at_twenty(), raw_events=[raw("bomb_pickup", 21.0, "Mate")])
        drop = events_of(detect_objective_sabotage(tl), ObjectiveEventType.BAD_BOMB_DROP)[0]
        assert drop.features_summary["enemy_pickup"] == 0

    def test_isolated_drop_is_not_enough(self):
        results = detect_objective_sabotage(objective_round(self.drops_at_twenty(mate_x=2000.0)))
        assert events_of(results, ObjectiveEventType.BAD_BOMB_DROP) == []

    def test_planting_is_not_a_drop(self):
        def plant(tick):
            return [event("plant", tick, "Carrier")] if tick == tick_at(20.0) else []

        results = detect_objective_sabotage(objective_round(self.drops_at_twenty(), plant))
        assert events_of(results, ObjectiveEventType.BAD_BOMB_DROP) == []


class TestDefuse:
    """Post-plant CT behavior around the bomb."""

    PLANT = 10.0

    @classmethod
    def planted(cls, has_defuser=False):
        def roster(elapsed):
            return [
                player(1, "Carrier", Team.T, x=1000.0, y=1000.0, has_bomb=elapsed < cls.PLANT),
                player(5, "Ct", Team.CT, x=1050.0, y=1000.0, has_defuser=has_defuser),
            ]

        return roster

    def refusals(self, has_defuser=False, extra_raw=()):
        tl = objective_round(
            self.planted(has_defuser),
            raw_events=[raw("bomb_planted", self.PLANT, "Carrier"), *extra_raw],
        )
        return events_of(detect_objective_sabotage(tl), ObjectiveEventType.DEFUSE_REFUSAL, "Ct")

    def test_standing_on_bomb_without_defusing(self):
        found = self.refusals()

        assert found
        first = found[0]
        assert first.start_tick >= tick_at(self.PLANT)
        assert first.duration >= 2.0
        assert first.features_summary["distance_to_bomb"] == pytest.approx(50.0)

    def test_no_refusal_once_time_runs_out(self):
        # 40s fuse minus 10s defuse and 2s buffer
        explosion = (tick_at(self.PLANT)) / TICK_RATE + 40.0
        assert max(e.end_time for e in self.refusals()) <= explosion - 12.0

    def test_kit_extends_the_window(self):
        without_kit = max(e.end_time for e in self.refusals())
        with_kit = max(e.end_time for e in self.refusals(has_defuser=True))
        assert with_kit > without_kit

    def test_defuse_attempt_clears_refusal(self):
        attempt = [raw("bomb_begindefuse", 12.5, "Ct"), raw("bomb_defused", 22.5, "Ct")]
        found = self.refusals(extra_raw=attempt)
        assert all(e.end_tick < tick_at(12.5) for e in found)

    def test_quick_abort_without_pressure(self):
        tl = objective_round(
            self.planted(),
            raw_events=[
                raw("bomb_planted", self.PLANT, "Carrier"),
                raw("bomb_begindefuse", 15.0, "Ct"),
                raw("bomb_abortdefuse", 15.5, "Ct"),
            ],
        )
        aborts = events_of(detect_objective_sabotage(tl), ObjectiveEventType.DEFUSE_ABORT, "Ct")

        assert len(aborts) == 1
        assert aborts[0].score == pytest.approx(0.7)
        assert aborts[0].features_summary["abort_duration"] == pytest.approx(0.5)

    def test_reattempt_clears_abort(self):
        tl = objective_round(
            self.planted(),
            raw_events=[
                raw("bomb_planted", self.PLANT, "Carrier"),
                raw("bomb_begindefuse", 15.0, "Ct"),
                raw("bomb_abortdefuse", 15.5, "Ct"),
                raw("bomb_begindefuse", 16.5, "Ct"),
            ],
        )
        assert events_of(detect_objective_sabotage(tl), ObjectiveEventType.DEFUSE_ABORT) == []

    def test_long_defuse_attempt_is_not_an_abort(self):
        tl = objective_round(
            self.planted(),
            raw_events=[
                raw("bomb_planted", self.PLANT, "Carrier"),
                raw("bomb_begindefuse", 15.0, "Ct"),
                raw("bomb_abortdefuse", 18.0, "Ct"),
            ],
        )
        assert events_of(detect_objective_sabotage(tl), ObjectiveEventType.DEFUSE_ABORT) == []


class TestAggregation:
    """Round summaries and repeat escalation."""

    @staticmethod
    def make_event(round_number: int, confidence: float) -> ObjectiveEvent:
        return ObjectiveEvent(
            type=ObjectiveEventType.BOMB_CARRIER_STALL,
            round=round_number,
            start_tick=round_number * 1000,
            end_tick=round_number * 1000 + 640,
            start_time=0.0,
            end_time=10.0,
            duration=10.0,
            actor_id=1,
            actor_name="Carrier",
            confidence=confidence,
            score=confidence,
            features_summary={},
            human_reason="",
        )

    def test_repeat_in_later_round_is_escalated(self):
        detector = ObjectiveSabotageDetector(timeline([]))
        first, second = self.make_event(1, 0.5), self.make_event(2, 0.5)
        detector._apply_repeat_pattern([second, first])

        assert first.confidence == pytest.approx(0.5)
        assert second.confidence == pytest.approx(0.7)

    def test_repeat_escalation_is_clamped(self):
        detector = ObjectiveSabotageDetector(timeline([]), ObjectiveConfig(repeat_pattern_multiplier=3.0))
        first, second = self.make_event(1, 0.5), self.make_event(2, 0.5)
        detector._apply_repeat_pattern([first, second])
        assert second.confidence == pytest.approx(1.0)

    def test_quiet_round_has_no_players(self):
        def quiet(elapsed):
            return [player(1, "A", Team.T, x=250.0 * elapsed), player(3, "B", Team.CT, x=-3000.0)]

        results = detect_objective_sabotage(objective_round(quiet))
        assert len(results) == 1
        assert results[0].players == []
        assert results[0].events == []

    def test_to_dict_uses_event_type_values(self):
        data = detect_objective_sabotage(objective_round(carrier_stands_then_walks))[0].to_dict()
        assert data["players"][0]["events"][0]["type"] == "BombCarrierStall"
        assert "humanReason" in data["players"][0]["events"][0]
