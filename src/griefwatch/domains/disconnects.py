"""
Disconnect / Reconnect Detection

Two sources, reconciled without double counting:
1. Explicit ``player_disconnect`` / ``player_connect`` events. Authoritative;
   a connect closes the most recent open disconnect of that player before it.
2. Frame presence. A player missing from frames for longer than the gap
   threshold is treated as disconnected until they reappear. Players that
   have any explicit disconnect are left out of this path.

Rounds missed excludes the disconnect round when the player had already died
in it, and the reconnect round when they were back before freeze time ended.
"""

import logging
import math
from dataclasses import dataclass, field

from griefwatch.core.config import DisconnectConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import RawEvent, Round, Timeline, normalize_raw_events
from griefwatch.core.utils import record_to_dict, timed

logger = logging.getLogger(__name__)

SOURCE_EXPLICIT = "explicit"
SOURCE_FRAME_GAP = "frame_gap"


@dataclass
class DisconnectReconnect:
    player_id: int
    player_name: str
    team: Team
    disconnect_tick: int
    disconnect_time: float
    disconnect_round: int
    reconnect_tick: int | None = None
    reconnect_time: float | None = None
    reconnect_round: int | None = None
    duration: float | None = None
    rounds_missed: int = 0
    died_before_disconnect: bool = False
    reconnected_before_freeze_end: bool = False
    source: str = SOURCE_FRAME_GAP
    reason: str | None = None

    @property
    def is_permanent(self) -> bool:
        return self.reconnect_tick is None

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class _Presence:
    last_seen_tick: int
    last_seen_time: float
    name: str
    team: Team
    open_record: DisconnectReconnect | None = None


@dataclass
class _DeathIndex:
    """First tick each player was seen dead, per round."""

    first_death: dict[tuple[int, int], int] = field(default_factory=dict)

    def add(self, round_number: int, player_id: int, tick: int) -> None:
        self.first_death.setdefault((round_number, player_id), tick)

    def died_before(self, round_number: int, player_id: int, tick: int) -> bool:
        """Whether the player was already dead at ``tick`` in that round."""
        death_tick = self.first_death.get((round_number, player_id))
        return death_tick is not None and death_tick <= tick


class DisconnectDetector:
    def __init__(self, timeline: Timeline, config: DisconnectConfig | None = None):
        self.timeline = timeline
        self.config = config or DisconnectConfig()
        self._deaths = self._index_deaths()

    def _index_deaths(self) -> _DeathIndex:
        index = _DeathIndex()
        for frame in self.timeline.frames:
            rnd = self.timeline.round_for_tick(frame.tick)
            if rnd is None:
                continue
            for player in frame.players:
                if player.team != Team.SPECTATOR and not player.is_alive:
                    index.add(rnd.number, player.id, frame.tick)
        return index

    @timed
    def detect(self) -> list[DisconnectReconnect]:
        explicit = self._from_explicit_events()
        explicit_ids = {record.player_id for record in explicit}
        inferred = self._from_frame_presence(exclude=explicit_ids)

        records = sorted(explicit + inferred, key=lambda r: (r.disconnect_time, r.player_id))
        kept = [r for r in records if not self._is_end_of_match_blip(r)]
        logger.info(
            f"Found {len(kept)} disconnects ({len(explicit)} explicit, {len(inferred)} from frame gaps, "
            f"{len(records) - len(kept)} end-of-match blips suppressed)"
        )
        return kept

    # ------------------------------------------------------------------
    # Explicit events
    # ------------------------------------------------------------------

    def _from_explicit_events(self) -> list[DisconnectReconnect]:
        disconnects = normalize_raw_events(self.timeline.disconnect_events, default_name="player_disconnect")
        connects = normalize_raw_events(self.timeline.connect_events, default_name="player_connect")
        if not disconnects:
            return []

        ids_by_name = {name: pid for pid, name in self.timeline.player_names().items()}
        open_by_player: dict[int, list[DisconnectReconnect]] = {}
        records: list[DisconnectReconnect] = []

        for event in disconnects:
            player_id = self._resolve_id(event, ids_by_name)
            if player_id is None:
                logger.debug(f"Unresolvable disconnect event at tick {event.tick}")
                continue
            record = self._open_record(player_id, event.tick, SOURCE_EXPLICIT, event.player_name)
            record.reason = event.reason
            records.append(record)
            open_by_player.setdefault(player_id, []).append(record)

        for event in connects:
            player_id = self._resolve_id(event, ids_by_name)
            candidates = [r for r in open_by_player.get(player_id, []) if r.disconnect_tick < event.tick]
            if not candidates:
                continue
            record = max(candidates, key=lambda r: r.disconnect_tick)
            open_by_player[player_id].remove(record)
            self._close_record(record, event.tick, self.timeline.tick_to_time(event.tick))

        for record in records:
            if record.is_permanent:
                self._close_permanent(record)
        return records

    @staticmethod
    def _resolve_id(event: RawEvent, ids_by_name: dict[str, int]) -> int | None:
        if event.player_id is not None:
            return event.player_id
        if event.player_name is not None:
            return ids_by_name.get(event.player_name)
        return None

    # ------------------------------------------------------------------
    # Frame presence fallback
    # ------------------------------------------------------------------

    def _from_frame_presence(self, exclude: set[int]) -> list[DisconnectReconnect]:
        gap_ticks = math.ceil(self.config.gap_threshold_seconds * self.timeline.tick_rate)
        presence: dict[int, _Presence] = {}
        records: list[DisconnectReconnect] = []

        for frame in self.timeline.frames:
            present: set[int] = set()
            for player in frame.players:
                if player.team == Team.SPECTATOR or player.id in exclude:
                    continue
                present.add(player.id)

                state = presence.get(player.id)
                if state is None:
                    presence[player.id] = _Presence(frame.tick, frame.time, player.name, player.team)
                    continue

                if state.open_record is not None:
                    self._close_record(state.open_record, frame.tick, frame.time)
                    state.open_record = None
                state.last_seen_tick = frame.tick
                state.last_seen_time = frame.time

            for player_id, state in presence.items():
                if player_id in present or state.open_record is not None:
                    continue
                if frame.tick - state.last_seen_tick >= gap_ticks:
                    record = DisconnectReconnect(
                        player_id=player_id,
                        player_name=state.name,
                        team=state.team,
                        disconnect_tick=state.last_seen_tick,
                        disconnect_time=state.last_seen_time,
                        disconnect_round=self.timeline.round_number_for_tick(state.last_seen_tick),
                    )
                    state.open_record = record
                    records.append(record)

        for state in presence.values():
            if state.open_record is not None:
                self._close_permanent(state.open_record)
        return records

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    def _open_record(self, player_id: int, tick: int, source: str, name: str | None) -> DisconnectReconnect:
        frame = self._last_frame_with(player_id, tick)
        player = frame.player_by_id(player_id) if frame else None
        return DisconnectReconnect(
            player_id=player_id,
            player_name=name or (player.name if player else str(player_id)),
            team=player.team if player else Team.SPECTATOR,
            disconnect_tick=tick,
            disconnect_time=self.timeline.tick_to_time(tick),
            disconnect_round=self.timeline.round_number_for_tick(tick),
            source=source,
        )

    def _last_frame_with(self, player_id: int, tick: int):
        for frame in reversed(self.timeline.frames_between(0, tick)):
            if frame.player_by_id(player_id) is not None:
                return frame
        return None

    def _close_record(self, record: DisconnectReconnect, tick: int, time: float) -> None:
        reconnect_round = self.timeline.round_for_tick(tick)
        record.reconnect_tick = tick
        record.reconnect_time = time
        record.reconnect_round = reconnect_round.number if reconnect_round else None
        record.duration = time - record.disconnect_time
        record.died_before_disconnect = self._deaths.died_before(
            record.disconnect_round, record.player_id, record.disconnect_tick
        )
        record.reconnected_before_freeze_end = self._before_freeze_end(reconnect_round, tick)

        if record.disconnect_round and reconnect_round is not None:
            record.rounds_missed = rounds_missed(
                record.disconnect_round,
                reconnect_round.number,
                record.died_before_disconnect,
                record.reconnected_before_freeze_end,
            )

    def _close_permanent(self, record: DisconnectReconnect) -> None:
        record.duration = self.timeline.duration - record.disconnect_time
        record.died_before_disconnect = self._deaths.died_before(
            record.disconnect_round, record.player_id, record.disconnect_tick
        )
        if not record.disconnect_round or not self.timeline.rounds:
            return
        last_round = self.timeline.rounds[-1].number
        if last_round > record.disconnect_round:
            record.rounds_missed = last_round - record.disconnect_round + (
                0 if record.died_before_disconnect else 1
            )
        else:
            record.rounds_missed = 0

    def _before_freeze_end(self, rnd: Round | None, tick: int) -> bool:
        if rnd is None:
            return False
        since_start = (tick - rnd.start_tick) / self.timeline.tick_rate
        lenient = since_start < self.config.freeze_time_fallback_seconds
        return lenient or (rnd.freeze_end_tick is not None and tick < rnd.freeze_end_tick)

    def _is_end_of_match_blip(self, record: DisconnectReconnect) -> bool:
        if not self.timeline.rounds:
            return False
        if record.disconnect_round != self.timeline.rounds[-1].number:
            return False
        return (record.duration or 0.0) < self.config.last_round_min_duration_seconds


def rounds_missed(
    disconnect_round: int,
    reconnect_round: int,
    died_before_disconnect: bool,
    reconnected_before_freeze_end: bool,
) -> int:
    """Rounds a player sat out between disconnecting and reconnecting."""
    missed = reconnect_round - disconnect_round + (0 if died_before_disconnect else 1)
    if reconnected_before_freeze_end and missed > 0:
        missed -= 1
    return missed


def detect_disconnects(timeline: Timeline, config: DisconnectConfig | None = None) -> list[DisconnectReconnect]:
    """Convenience function to detect disconnects and reconnects."""
    return DisconnectDetector(timeline, config).detect()
