"""
AFK Detection at Round Start

Flags players who do not move during the grace window after freeze time
ends. A player who moves at any point inside the window is not AFK for that
round. Otherwise the AFK interval starts at freeze end (or at first sighting
for late joiners) and ends at the first of: first movement, death, round end.

Stopping mid-round after moving is the inactivity detector's job, not this one.
Action-based AFK (no shots, no utility) is not implemented; ``reason`` is
always ``"no_movement"``.
"""

import logging
import math
from dataclasses import dataclass

from griefwatch.core.config import AFKConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import PlayerState, Position, Timeline
from griefwatch.core.utils import distance_2d, record_to_dict, timed

logger = logging.getLogger(__name__)


@dataclass
class AFKDetection:
    """One AFK interval for one player in one round."""

    player_id: int
    player_name: str
    team: Team
    round: int
    start_tick: int
    freeze_end_tick: int | None
    afk_duration: float  # seconds, uncapped
    time_to_first_movement: float | None = None
    reason: str = "no_movement"
    start_afk_tick: int | None = None
    end_afk_tick: int | None = None
    died_while_afk: bool = False

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class _PlayerTrack:
    player: PlayerState
    last_position: Position
    first_seen_tick: int
    moved_during_grace: bool = False
    first_movement_tick: int | None = None
    death_tick: int | None = None


class AFKDetector:
    """Per-round AFK analysis over a timeline."""

    def __init__(self, timeline: Timeline, config: AFKConfig | None = None):
        self.timeline = timeline
        self.config = config or AFKConfig()

    @timed
    def detect(self) -> list[AFKDetection]:
        detections: list[AFKDetection] = []
        for rnd in self.timeline.rounds:
            detections.extend(self._detect_round(rnd))
        logger.info(f"Found {len(detections)} AFK detections")
        return detections

    def _detect_round(self, rnd) -> list[AFKDetection]:
        timeline = self.timeline
        tick_rate = timeline.tick_rate
        freeze_end = rnd.freeze_end_tick if rnd.freeze_end_tick is not None else rnd.start_tick
        round_end = rnd.end_tick if rnd.end_tick is not None else (timeline.last_tick or freeze_end)
        grace_end = freeze_end + math.ceil(self.config.grace_period_seconds * tick_rate)

        frames = timeline.frames_between(freeze_end, round_end)
        if not frames:
            return []

        tracks: dict[int, _PlayerTrack] = {}
        for frame in frames:
            for player in frame.players:
                if player.team == Team.SPECTATOR:
                    continue

                track = tracks.get(player.id)
                if track is None:
                    track = _PlayerTrack(
                        player=player,
                        last_position=player.position,
                        first_seen_tick=frame.tick,
                    )
                    tracks[player.id] = track

                if not player.is_alive:
                    if track.death_tick is None:
                        track.death_tick = frame.tick
                    continue

                moved = distance_2d(player.position, track.last_position) > self.config.movement_threshold
                track.last_position = player.position
                if moved:
                    if track.first_movement_tick is None:
                        track.first_movement_tick = frame.tick
                    if frame.tick < grace_end:
                        track.moved_during_grace = True

        detections = []
        for player_id, track in tracks.items():
            if track.moved_during_grace:
                continue

            late_joiner = track.first_seen_tick > grace_end
            if late_joiner and track.first_movement_tick is not None:
                continue
            start_afk = track.first_seen_tick if late_joiner else freeze_end

            died = False
            if track.first_movement_tick is not None and (
                track.death_tick is None or track.first_movement_tick <= track.death_tick
            ):
                end_afk = track.first_movement_tick
            elif track.death_tick is not None:
                end_afk = track.death_tick
                died = True
            else:
                end_afk = round_end

            afk_duration = (end_afk - start_afk) / tick_rate
            if afk_duration < self.config.afk_threshold_seconds:
                continue

            time_to_move = None
            if track.first_movement_tick is not None and not died:
                time_to_move = (track.first_movement_tick - start_afk) / tick_rate

            logger.debug(
                f"AFK: {track.player.name} round {rnd.number} for {afk_duration:.1f}s "
                f"(ticks {start_afk}-{end_afk})"
            )
            detections.append(
                AFKDetection(
                    player_id=player_id,
                    player_name=track.player.name,
                    team=track.player.team,
                    round=rnd.number,
                    start_tick=rnd.start_tick,
                    freeze_end_tick=rnd.freeze_end_tick,
                    afk_duration=afk_duration,
                    time_to_first_movement=time_to_move,
                    start_afk_tick=start_afk,
                    end_afk_tick=end_afk,
                    died_while_afk=died,
                )
            )
        return detections


def detect_afk_players(timeline: Timeline, config: AFKConfig | None = None) -> list[AFKDetection]:
    """Convenience function to detect AFK players at round start."""
    return AFKDetector(timeline, config).detect()
