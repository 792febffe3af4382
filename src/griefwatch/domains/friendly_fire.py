"""
Friendly Fire Detection

Team kills and team damage:
- Kill events are parsed from their description text
  ("<attacker> killed <victim> with <weapon>[ (headshot)]")
- Damage events are read from their structured fields
- Attacker and victim teams come from the frame the event was recorded in
- Related damage ticks between the same pair are grouped into one record

Filtered out: world/environment attackers, anything in the final seconds of
the demo (server shutdown artifacts), and damage whose implied pre-hit HP is
impossible (round-boundary HP resets).
"""

import logging
import re
from dataclasses import dataclass

from griefwatch.core.config import FriendlyFireConfig
from griefwatch.core.constants import (
    EVENT_DAMAGE,
    EVENT_KILL,
    KILL_DESCRIPTION_PATTERN,
    WORLD_ATTACKER_NAMES,
    Team,
)
from griefwatch.core.timeline import MatchFrame, PlayerState, Timeline
from griefwatch.core.utils import record_to_dict, timed

logger = logging.getLogger(__name__)

_KILL_RE = re.compile(KILL_DESCRIPTION_PATTERN, re.IGNORECASE)


@dataclass
class TeamKill:
    round: int
    tick: int
    time: float
    attacker_id: int
    attacker_name: str
    attacker_team: Team
    victim_id: int
    victim_name: str
    victim_team: Team
    weapon: str
    is_headshot: bool

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class TeamDamage:
    """Friendly damage; may stand for several raw damage ticks merged together."""

    round: int
    tick: int
    time: float
    attacker_id: int
    attacker_name: str
    attacker_team: Team
    victim_id: int
    victim_name: str
    victim_team: Team
    damage: float
    weapon: str | None
    initial_hp: float
    final_hp: float
    event_count: int = 1

    def to_dict(self) -> dict:
        data = record_to_dict(self)
        data["initialHP"] = data.pop("initialHp")
        data["finalHP"] = data.pop("finalHp")
        return data


def parse_kill_description(description: str) -> tuple[str, str, str, bool] | None:
    """
    Split a kill description into (attacker, victim, weapon, headshot).

    Returns None if the text does not match the decoder's kill format.
    """
    match = _KILL_RE.match(description.strip())
    if not match:
        return None
    attacker, victim, weapon = (part.strip() for part in match.groups())
    return attacker, victim, weapon, "headshot" in description.lower()


def is_world_attacker(name: str | None) -> bool:
    return name is None or name.strip().lower() in WORLD_ATTACKER_NAMES


def _same_playing_team(a: PlayerState, b: PlayerState) -> bool:
    return a.team == b.team and a.team != Team.SPECTATOR


class FriendlyFireDetector:
    """Team kill and team damage detection over a timeline."""

    def __init__(self, timeline: Timeline, config: FriendlyFireConfig | None = None):
        self.timeline = timeline
        self.config = config or FriendlyFireConfig()

    def _near_demo_end(self, frame: MatchFrame) -> bool:
        return self.timeline.duration - frame.time <= self.config.end_of_demo_exclusion_seconds

    # ------------------------------------------------------------------
    # Team kills
    # ------------------------------------------------------------------

    @timed
    def detect_team_kills(self) -> list[TeamKill]:
        kills: list[TeamKill] = []
        for frame in self.timeline.frames:
            for event in frame.events:
                if event.type != EVENT_KILL:
                    continue
                kill = self._classify_kill(frame, event.description)
                if kill is not None:
                    kills.append(kill)
        logger.info(f"Found {len(kills)} team kills")
        return kills

    def _classify_kill(self, frame: MatchFrame, description: str) -> TeamKill | None:
        parsed = parse_kill_description(description or "")
        if parsed is None:
            logger.debug(f"Unparseable kill description at tick {frame.tick}: {description!r}")
            return None
        attacker_name, victim_name, weapon, headshot = parsed

        if is_world_attacker(attacker_name) or self._near_demo_end(frame):
            return None

        attacker = frame.player_by_name(attacker_name)
        victim = frame.player_by_name(victim_name)
        if attacker is None or victim is None or not _same_playing_team(attacker, victim):
            return None

        rnd = self.timeline.round_for_tick(frame.tick)
        if rnd is None:
            logger.warning(f"Could not find round for kill at tick {frame.tick}, time {frame.time}")

        return TeamKill(
            round=rnd.number if rnd else 0,
            tick=frame.tick,
            time=frame.time,
            attacker_id=attacker.id,
            attacker_name=attacker_name,
            attacker_team=attacker.team,
            victim_id=victim.id,
            victim_name=victim_name,
            victim_team=victim.team,
            weapon=weapon,
            is_headshot=headshot,
        )

    # ------------------------------------------------------------------
    # Team damage
    # ------------------------------------------------------------------

    @timed
    def detect_team_damage(self) -> list[TeamDamage]:
        raw: list[TeamDamage] = []
        for frame in self.timeline.frames:
            for event in frame.events:
                if event.type != EVENT_DAMAGE:
                    continue
                record = self._classify_damage(frame, event)
                if record is not None:
                    raw.append(record)

        grouped = group_team_damage(raw, self.config)
        logger.info(f"Found {len(grouped)} team damage records ({len(raw)} raw events)")
        return grouped

    def _classify_damage(self, frame: MatchFrame, event) -> TeamDamage | None:
        if not event.attacker_name or not event.victim_name or not event.damage:
            return None
        if is_world_attacker(event.attacker_name) or self._near_demo_end(frame):
            return None

        attacker = frame.player_by_name(event.attacker_name)
        victim = frame.player_by_name(event.victim_name)
        if attacker is None or victim is None or not _same_playing_team(attacker, victim):
            return None

        rnd = self.timeline.round_for_tick(frame.tick)
        if rnd is None:
            logger.warning(f"Could not find round for damage at tick {frame.tick}, time {frame.time}")
            return None
        if rnd.end_tick is not None and frame.tick > rnd.end_tick:
            return None

        damage = float(event.damage)
        final_hp = float(victim.hp)
        initial_hp = final_hp + damage
        if initial_hp > self.config.max_hp or damage <= 0:
            logger.debug(f"Dropping damage at tick {frame.tick}: implied HP {initial_hp:g}")
            return None

        # Full HP well into the round means the snapshot was taken after a reset
        if final_hp == self.config.max_hp:
            since_round_start = frame.time - self.timeline.tick_to_time(rnd.start_tick)
            if since_round_start > self.config.full_hp_reset_grace_seconds:
                return None

        return TeamDamage(
            round=rnd.number,
            tick=frame.tick,
            time=frame.time,
            attacker_id=attacker.id,
            attacker_name=event.attacker_name,
            attacker_team=attacker.team,
            victim_id=victim.id,
            victim_name=event.victim_name,
            victim_team=victim.team,
            damage=damage,
            weapon=event.weapon,
            initial_hp=initial_hp,
            final_hp=final_hp,
        )


def group_team_damage(
    records: list[TeamDamage], config: FriendlyFireConfig | None = None
) -> list[TeamDamage]:
    """
    Merge bursts of damage between the same attacker/victim pair.

    Events join a group when they are within the time window OR the tick
    window of the group's first event. A merged group's damage is the HP
    delta between its boundary samples, not the sum of the raw deltas.
    """
    config = config or FriendlyFireConfig()
    ordered = sorted(records, key=lambda d: (d.time, d.tick))
    processed: set[int] = set()
    combined: list[TeamDamage] = []

    for i, first in enumerate(ordered):
        if i in processed:
            continue
        processed.add(i)
        group = [first]

        for j in range(i + 1, len(ordered)):
            if j in processed:
                continue
            other = ordered[j]
            time_diff = other.time - first.time
            if other.attacker_id != first.attacker_id or other.victim_id != first.victim_id:
                if time_diff > config.group_time_window_seconds:
                    break
                continue

            tick_diff = other.tick - first.tick
            if time_diff <= config.group_time_window_seconds or tick_diff <= config.group_tick_window:
                group.append(other)
                processed.add(j)
            else:
                break

        if len(group) == 1:
            if first.damage > 0 and first.initial_hp <= config.max_hp and first.final_hp >= 0:
                combined.append(first)
            continue

        initial_hp = group[0].initial_hp
        final_hp = group[-1].final_hp
        total = initial_hp - final_hp
        if total <= 0 or initial_hp > config.max_hp or final_hp < 0:
            continue

        weapons = list(dict.fromkeys(d.weapon for d in group if d.weapon))
        combined.append(
            TeamDamage(
                round=first.round,
                tick=first.tick,
                time=first.time,
                attacker_id=first.attacker_id,
                attacker_name=first.attacker_name,
                attacker_team=first.attacker_team,
                victim_id=first.victim_id,
                victim_name=first.victim_name,
                victim_team=first.victim_team,
                damage=total,
                weapon=", ".join(weapons) or None,
                initial_hp=initial_hp,
                final_hp=final_hp,
                event_count=len(group),
            )
        )

    return combined


def detect_team_kills(timeline: Timeline, config: FriendlyFireConfig | None = None) -> list[TeamKill]:
    """Convenience function to detect team kills."""
    return FriendlyFireDetector(timeline, config).detect_team_kills()


def detect_team_damage(timeline: Timeline, config: FriendlyFireConfig | None = None) -> list[TeamDamage]:
    """Convenience function to detect grouped team damage."""
    return FriendlyFireDetector(timeline, config).detect_team_damage()
