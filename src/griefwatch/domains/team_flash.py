"""
Team Flash Detection

Classifies ``player_blind`` events as friendly flashes. The blind event is the
only source carrying both the thrower and the victim, so it is the sole input.
Short blinds and self-flashes are ignored, and the decoder's duplicate reports
of one flash are collapsed to the most informative (longest) one.
"""

import logging
from dataclasses import dataclass

from griefwatch.core.config import TeamFlashConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import PlayerState, RawEvent, Timeline, normalize_raw_events
from griefwatch.core.utils import record_to_dict, timed

logger = logging.getLogger(__name__)


@dataclass
class TeamFlash:
    round: int
    tick: int
    time: float
    thrower_id: int
    thrower_name: str
    thrower_team: Team
    victim_id: int
    victim_name: str
    victim_team: Team
    flash_duration: float

    def to_dict(self) -> dict:
        return record_to_dict(self)


class TeamFlashDetector:
    def __init__(self, timeline: Timeline, config: TeamFlashConfig | None = None):
        self.timeline = timeline
        self.config = config or TeamFlashConfig()

    @timed
    def detect(self) -> list[TeamFlash]:
        blinds = normalize_raw_events(self.timeline.player_blind_events, default_name="player_blind")
        flashes = []
        for blind in blinds:
            flash = self._classify(blind)
            if flash is not None:
                flashes.append(flash)

        deduped = deduplicate_flashes(flashes, self.config.dedup_window_seconds)
        logger.info(f"Found {len(deduped)} team flashes ({len(flashes) - len(deduped)} duplicates dropped)")
        return deduped

    def _classify(self, blind: RawEvent) -> TeamFlash | None:
        duration = blind.blind_duration
        if duration is None or duration < self.config.min_flash_duration:
            return None
        if blind.attacker_name is None and blind.attacker_id is None:
            return None

        if blind.attacker_id is not None and blind.player_id is not None:
            if blind.attacker_id == blind.player_id:
                return None
        elif blind.attacker_name == blind.player_name:
            return None

        thrower, victim = self._resolve_players(blind)
        if thrower is None or victim is None:
            logger.debug(f"Could not resolve flash participants at tick {blind.tick}")
            return None
        if thrower.id == victim.id:
            return None
        if thrower.team != victim.team or thrower.team == Team.SPECTATOR:
            return None

        return TeamFlash(
            round=self.timeline.round_number_for_tick(blind.tick),
            tick=blind.tick,
            time=self.timeline.tick_to_time(blind.tick),
            thrower_id=thrower.id,
            thrower_name=thrower.name,
            thrower_team=thrower.team,
            victim_id=victim.id,
            victim_name=victim.name,
            victim_team=victim.team,
            flash_duration=duration,
        )

    def _resolve_players(self, blind: RawEvent) -> tuple[PlayerState | None, PlayerState | None]:
        """Search frames in a short window ending at the blind tick, newest first."""
        window = self.timeline.frames_between(blind.tick - self.config.team_lookup_window_ticks, blind.tick)
        for frame in reversed(window):
            thrower = _find(frame.players, blind.attacker_id, blind.attacker_name)
            victim = _find(frame.players, blind.player_id, blind.player_name)
            if thrower is not None and victim is not None:
                return thrower, victim
        return None, None


def _find(players: list[PlayerState], player_id: int | None, name: str | None) -> PlayerState | None:
    for player in players:
        if player_id is not None and player.id == player_id:
            return player
    if name is not None:
        for player in players:
            if player.name == name:
                return player
    return None


def deduplicate_flashes(flashes: list[TeamFlash], window_seconds: float = 1.0) -> list[TeamFlash]:
    """Collapse reports of one flash (same thrower, victim, round) within ``window_seconds``."""
    kept: list[TeamFlash] = []
    latest: dict[tuple[int, int, int], int] = {}

    for flash in sorted(flashes, key=lambda f: (f.tick, f.thrower_id, f.victim_id)):
        key = (flash.thrower_id, flash.victim_id, flash.round)
        index = latest.get(key)
        if index is not None and flash.time - kept[index].time <= window_seconds:
            if flash.flash_duration > kept[index].flash_duration:
                kept[index] = flash
            continue
        latest[key] = len(kept)
        kept.append(flash)

    return kept


def detect_team_flashes(timeline: Timeline, config: TeamFlashConfig | None = None) -> list[TeamFlash]:
    """Convenience function to detect team flashes."""
    return TeamFlashDetector(timeline, config).detect()
