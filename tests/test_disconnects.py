"""Tests for disconnect / reconnect detection."""

import pytest

from factories import TICK_RATE, frame, player, timeline
from griefwatch.core.config import DisconnectConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import Round
from griefwatch.domains.disconnects import (
    SOURCE_EXPLICIT,
    SOURCE_FRAME_GAP,
    DisconnectDetector,
    detect_disconnects,
    rounds_missed,
)

ROUND_TICKS = 3200
ROUND_COUNT = 9


def round_start(number: int) -> int:
    return (number - 1) * ROUND_TICKS


def match(absent=None, dead=None, disconnects=(), connects=()):
    """Nine 50s rounds; Dave (id 5) leaves the frames inside ``absent`` and is dead inside ``dead``."""
    rounds = [
        Round(
            number=n,
            start_tick=round_start(n),
            freeze_end_tick=round_start(n) + 640,
            end_tick=round_start(n) + ROUND_TICKS - 1,
        )
        for n in range(1, ROUND_COUNT + 1)
    ]
    frames = []
    for tick in range(0, ROUND_COUNT * ROUND_TICKS, TICK_RATE):
        players = [player(1, "Alice", Team.CT)]
        if absent is None or not (absent[0] <= tick < absent[1]):
            alive = dead is None or not (dead[0] <= tick < dead[1])
            players.append(player(5, "Dave", Team.CT, is_alive=alive))
        frames.append(frame(tick, players))
    return timeline(
        frames,
        rounds,
        disconnect_events=[{"event_name": "player_disconnect", "tick": t, "user_name": "Dave"} for t in disconnects],
        connect_events=[{"event_name": "player_connect", "tick": t, "user_name": "Dave"} for t in connects],
    )


DISCONNECT_TICK = round_start(5) + 1500
RECONNECT_TICK = round_start(8) + 30 * TICK_RATE


class TestRoundsMissed:
    """Tests for the rounds-missed arithmetic."""

    def test_alive_disconnect(self):
        assert rounds_missed(5, 8, died_before_disconnect=False, reconnected_before_freeze_end=False) == 4

    def test_died_before_disconnect(self):
        assert rounds_missed(5, 8, died_before_disconnect=True, reconnected_before_freeze_end=False) == 3

    def test_reconnected_before_freeze_end(self):
        assert rounds_missed(5, 8, died_before_disconnect=False, reconnected_before_freeze_end=True) == 3
        assert rounds_missed(5, 8, died_before_disconnect=True, reconnected_before_freeze_end=True) == 2

    def test_never_negative(self):
        assert rounds_missed(5, 5, died_before_disconnect=True, reconnected_before_freeze_end=True) == 0


class TestExplicitEvents:
    """Tests for disconnects reported by the decoder."""

    def test_disconnect_and_reconnect(self):
        tl = match(absent=(DISCONNECT_TICK, RECONNECT_TICK), disconnects=[DISCONNECT_TICK], connects=[RECONNECT_TICK])
        records = detect_disconnects(tl)

        assert len(records) == 1
        record = records[0]
        assert record.player_name == "Dave"
        assert record.source == SOURCE_EXPLICIT
        assert record.disconnect_round == 5
        assert record.reconnect_round == 8
        assert record.rounds_missed == 4
        assert record.duration == pytest.approx((RECONNECT_TICK - DISCONNECT_TICK) / TICK_RATE)

    def test_died_before_disconnect(self):
        tl = match(
            absent=(DISCONNECT_TICK, RECONNECT_TICK),
            dead=(round_start(5) + 1000, DISCONNECT_TICK),
            disconnects=[DISCONNECT_TICK],
            connects=[RECONNECT_TICK],
        )
        record = detect_disconnects(tl)[0]
        assert record.died_before_disconnect is True
        assert record.rounds_missed == 3

    def test_death_after_disconnect_is_not_counted(self):
        # The abandoned body is killed later in the same round
        tl = match(
            dead=(DISCONNECT_TICK + 640, round_start(6)),
            disconnects=[DISCONNECT_TICK],
            connects=[RECONNECT_TICK],
        )
        record = detect_disconnects(tl)[0]
        assert record.died_before_disconnect is False
        assert record.rounds_missed == 4

    def test_reconnect_before_freeze_end(self):
        reconnect = round_start(8) + 5 * TICK_RATE
        tl = match(absent=(DISCONNECT_TICK, reconnect), disconnects=[DISCONNECT_TICK], connects=[reconnect])
        record = detect_disconnects(tl)[0]
        assert record.reconnected_before_freeze_end is True
        assert record.rounds_missed == 3

    def test_permanent_disconnect(self):
        tl = match(absent=(DISCONNECT_TICK, ROUND_COUNT * ROUND_TICKS), disconnects=[DISCONNECT_TICK])
        record = detect_disconnects(tl)[0]

        assert record.is_permanent
        assert record.reconnect_tick is None
        assert record.duration == pytest.approx(tl.duration - DISCONNECT_TICK / TICK_RATE)
        assert record.rounds_missed == ROUND_COUNT - 5 + 1

    def test_connect_matches_most_recent_open_disconnect(self):
        first, second = round_start(2) + 1500, round_start(3) + 1500
        reconnect = round_start(4) + 30 * TICK_RATE
        tl = match(disconnects=[first, second], connects=[reconnect])
        records = detect_disconnects(tl)

        assert len(records) == 2
        by_tick = {r.disconnect_tick: r for r in records}
        assert by_tick[second].reconnect_tick == reconnect
        assert by_tick[first].is_permanent

    def test_explicit_players_skip_frame_gap_path(self):
        tl = match(absent=(DISCONNECT_TICK, RECONNECT_TICK), disconnects=[DISCONNECT_TICK], connects=[RECONNECT_TICK])
        records = detect_disconnects(tl)
        assert [r.source for r in records] == [SOURCE_EXPLICIT]

    def test_resolves_by_steamid(self):
        tl = match(absent=(DISCONNECT_TICK, RECONNECT_TICK))
        tl.disconnect_events = [{"tick": DISCONNECT_TICK, "user_steamid": 5, "reason": "timed out"}]
        tl.connect_events = [{"tick": RECONNECT_TICK, "user_steamid": 5}]
        record = detect_disconnects(tl)[0]
        assert record.player_id == 5
        assert record.reason == "timed out"


class TestFrameGaps:
    """Tests for disconnects inferred from missing frames."""

    def test_gap_is_a_disconnect(self):
        tl = match(absent=(DISCONNECT_TICK, RECONNECT_TICK))
        records = detect_disconnects(tl)

        assert len(records) == 1
        record = records[0]
        assert record.source == SOURCE_FRAME_GAP
        assert record.disconnect_tick < DISCONNECT_TICK
        assert record.reconnect_tick == RECONNECT_TICK
        assert record.rounds_missed == 4

    def test_short_gap_is_ignored(self):
        tl = match(absent=(DISCONNECT_TICK, DISCONNECT_TICK + TICK_RATE))
        assert detect_disconnects(tl) == []

    def test_gap_threshold_is_configurable(self):
        tl = match(absent=(DISCONNECT_TICK, DISCONNECT_TICK + 3 * TICK_RATE))
        assert len(detect_disconnects(tl)) == 1
        assert DisconnectDetector(tl, DisconnectConfig(gap_threshold_seconds=10.0)).detect() == []


class TestEndOfMatchBlips:
    """Short disconnects in the final round are network noise."""

    def test_short_last_round_disconnect_is_suppressed(self):
        disconnect = round_start(ROUND_COUNT) + 1000
        tl = match(disconnects=[disconnect], connects=[disconnect + 3 * TICK_RATE])
        assert detect_disconnects(tl) == []

    def test_short_disconnect_in_earlier_round_is_kept(self):
        disconnect = round_start(5) + 1000
        tl = match(disconnects=[disconnect], connects=[disconnect + 3 * TICK_RATE])
        records = detect_disconnects(tl)
        assert len(records) == 1
        assert records[0].rounds_missed == 0

    def test_output_order_is_stable(self):
        tl = match(absent=(DISCONNECT_TICK, RECONNECT_TICK))
        assert [r.to_dict() for r in detect_disconnects(tl)] == [r.to_dict() for r in detect_disconnects(tl)]
