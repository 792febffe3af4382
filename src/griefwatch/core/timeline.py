"""
Timeline model for Griefwatch.

A Timeline is the normalized, in-memory view of one decoded match: sparse
per-tick frames of player snapshots, embedded game events, round boundaries,
and a handful of loosely-typed auxiliary event streams straight from the
decoder. Detectors only ever read from it.

The decoder is inconsistent about field names across event types (``tick`` vs
``tick_num`` vs ``t``), so raw events are read exclusively through the
``get_*`` accessors below, or normalized once into :class:`RawEvent`.
"""

from __future__ import annotations

import gzip
import json
import logging
from bisect import bisect_right
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Any

from griefwatch.core.constants import CS2_TICK_RATE, Team

logger = logging.getLogger(__name__)


class TimelineError(ValueError):
    """Raised when a timeline document cannot be interpreted."""


# ============================================================================
# Raw event accessors
# ============================================================================

TICK_ALIASES = ("tick", "tick_num", "t", "game_tick", "tickNum")
EVENT_NAME_ALIASES = ("event_name", "event", "type", "eventName")
PLAYER_NAME_ALIASES = ("user_name", "player_name", "userName", "playerName", "player")
PLAYER_ID_ALIASES = ("user_steamid", "steamid", "player_id", "playerId", "user_id", "userid")
ATTACKER_NAME_ALIASES = ("attacker_name", "attackerName", "attacker")
ATTACKER_ID_ALIASES = ("attacker_steamid", "attacker_id", "attackerId")
ITEM_ALIASES = ("item", "item_name", "weapon", "itemName")
DAMAGE_ALIASES = ("dmg_health", "damage", "dmg", "health_damage")
BLIND_DURATION_ALIASES = ("blind_duration", "blindDuration", "flash_duration", "duration")
REASON_ALIASES = ("reason", "disconnect_reason")


def _lookup(event: Any, aliases: Iterable[str]) -> Any:
    """Return the first non-None value among aliases, for mappings or plain objects."""
    for key in aliases:
        if isinstance(event, Mapping):
            value = event.get(key)
        else:
            value = getattr(event, key, None)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _int_or(value: Any, default: int) -> int:
    parsed = _as_int(value)
    return default if parsed is None else parsed


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def get_tick(event: Any) -> int | None:
    return _as_int(_lookup(event, TICK_ALIASES))


def get_event_name(event: Any) -> str | None:
    return _as_str(_lookup(event, EVENT_NAME_ALIASES))


def get_player_name(event: Any) -> str | None:
    return _as_str(_lookup(event, PLAYER_NAME_ALIASES))


def get_player_id(event: Any) -> int | None:
    return _as_int(_lookup(event, PLAYER_ID_ALIASES))


def get_attacker_name(event: Any) -> str | None:
    return _as_str(_lookup(event, ATTACKER_NAME_ALIASES))


def get_attacker_id(event: Any) -> int | None:
    return _as_int(_lookup(event, ATTACKER_ID_ALIASES))


def get_item(event: Any) -> str | None:
    return _as_str(_lookup(event, ITEM_ALIASES))


def get_damage(event: Any) -> float | None:
    return _as_float(_lookup(event, DAMAGE_ALIASES))


def get_blind_duration(event: Any) -> float | None:
    return _as_float(_lookup(event, BLIND_DURATION_ALIASES))


@dataclass
class RawEvent:
    """A raw decoder event normalized to one canonical shape."""

    name: str
    tick: int
    player_name: str | None = None
    player_id: int | None = None
    attacker_name: str | None = None
    attacker_id: int | None = None
    item: str | None = None
    damage: float | None = None
    blind_duration: float | None = None
    reason: str | None = None


def normalize_raw_event(event: Any, default_name: str | None = None) -> RawEvent | None:
    """
    Normalize a loosely-typed decoder event.

    Returns None when the event has no usable tick or name; callers skip it.
    """
    tick = get_tick(event)
    name = get_event_name(event) or default_name
    if tick is None or name is None:
        return None
    return RawEvent(
        name=name,
        tick=tick,
        player_name=get_player_name(event),
        player_id=get_player_id(event),
        attacker_name=get_attacker_name(event),
        attacker_id=get_attacker_id(event),
        item=get_item(event),
        damage=get_damage(event),
        blind_duration=get_blind_duration(event),
        reason=_as_str(_lookup(event, REASON_ALIASES)),
    )


def normalize_raw_events(events: Iterable[Any], default_name: str | None = None) -> list[RawEvent]:
    """Normalize a raw stream, dropping malformed entries, sorted by tick."""
    normalized = []
    skipped = 0
    for event in events:
        raw = normalize_raw_event(event, default_name)
        if raw is None:
            skipped += 1
            continue
        normalized.append(raw)
    if skipped:
        logger.debug(f"Skipped {skipped} malformed raw events ({default_name or 'mixed'})")
    normalized.sort(key=lambda e: e.tick)
    return normalized


# ============================================================================
# Frame model
# ============================================================================


@dataclass
class Position:
    x: float
    y: float
    z: float | None = None


@dataclass
class Equipment:
    primary: str | None = None
    grenades: list[str] = field(default_factory=list)


@dataclass
class PlayerState:
    """One player's snapshot at one frame."""

    id: int
    name: str
    team: Team
    hp: int = 100
    is_alive: bool = True
    position: Position = field(default_factory=lambda: Position(0.0, 0.0))
    view_angle: float = 0.0  # degrees
    has_bomb: bool = False
    flash_duration: float = 0.0
    shots_fired: int = 0
    equipment: Equipment = field(default_factory=Equipment)
    money: int | None = None
    has_defuser: bool = False
    has_helmet: bool = False
    is_connected: bool = True
    is_scoped: bool = False


@dataclass
class GameEvent:
    """An event embedded in the frame at the tick it occurred."""

    type: str
    tick: int
    description: str = ""
    player_name: str | None = None
    message: str | None = None
    weapon: str | None = None
    attacker_name: str | None = None
    victim_name: str | None = None
    attacker_team: Team | None = None
    victim_team: Team | None = None
    damage: float | None = None
    is_headshot: bool = False


@dataclass
class MatchFrame:
    tick: int
    time: float  # seconds
    players: list[PlayerState] = field(default_factory=list)
    events: list[GameEvent] = field(default_factory=list)

    def player_by_name(self, name: str) -> PlayerState | None:
        for player in self.players:
            if player.name == name:
                return player
        return None

    def player_by_id(self, player_id: int) -> PlayerState | None:
        for player in self.players:
            if player.id == player_id:
                return player
        return None


@dataclass
class Round:
    number: int  # 1-based
    start_tick: int
    freeze_end_tick: int | None = None
    end_tick: int | None = None
    winner: Team | None = None


# ============================================================================
# Timeline
# ============================================================================


@dataclass
class Timeline:
    """A decoded match. Frames are ordered by tick and sparse."""

    tick_rate: float = CS2_TICK_RATE
    duration: float = 0.0
    rounds: list[Round] = field(default_factory=list)
    frames: list[MatchFrame] = field(default_factory=list)
    map_name: str = ""

    # Auxiliary raw streams as emitted by the decoder
    player_blind_events: list[Any] = field(default_factory=list)
    disconnect_events: list[Any] = field(default_factory=list)
    connect_events: list[Any] = field(default_factory=list)
    grenades: list[Any] = field(default_factory=list)
    # Inventory / buy-phase events (item_pickup, player_spawn, buytime_ended ...)
    raw_events: list[Any] = field(default_factory=list)

    @cached_property
    def _frame_ticks(self) -> list[int]:
        return [frame.tick for frame in self.frames]

    @property
    def last_tick(self) -> int:
        return self.frames[-1].tick if self.frames else 0

    def frame_at_or_before(self, tick: int) -> MatchFrame | None:
        """Nearest frame at or preceding ``tick``."""
        index = bisect_right(self._frame_ticks, tick) - 1
        if index < 0:
            return None
        return self.frames[index]

    def frame_at(self, tick: int) -> MatchFrame | None:
        frame = self.frame_at_or_before(tick)
        if frame is not None and frame.tick == tick:
            return frame
        return None

    def frames_between(self, start_tick: int, end_tick: int) -> list[MatchFrame]:
        """Frames with ``start_tick <= tick <= end_tick``."""
        ticks = self._frame_ticks
        lo = bisect_right(ticks, start_tick - 1)
        hi = bisect_right(ticks, end_tick)
        return self.frames[lo:hi]

    def round_for_tick(self, tick: int) -> Round | None:
        """
        Round a tick belongs to.

        Prefers the round whose bounds contain the tick (highest start tick
        wins when bounds overlap), otherwise the latest round that started
        before the tick.
        """
        in_bounds = [
            r for r in self.rounds if tick >= r.start_tick and (r.end_tick is None or tick <= r.end_tick)
        ]
        if in_bounds:
            return max(in_bounds, key=lambda r: r.start_tick)
        started = [r for r in self.rounds if tick >= r.start_tick]
        if started:
            return max(started, key=lambda r: r.start_tick)
        return None

    def round_number_for_tick(self, tick: int) -> int:
        found = self.round_for_tick(tick)
        return found.number if found else 0

    def player_names(self) -> dict[int, str]:
        """Last known name for every player id seen in frames."""
        names: dict[int, str] = {}
        for frame in self.frames:
            for player in frame.players:
                names[player.id] = player.name
        return names

    def tick_to_time(self, tick: int) -> float:
        return tick / self.tick_rate if self.tick_rate else 0.0

    def seconds_to_ticks(self, seconds: float) -> int:
        return int(round(seconds * self.tick_rate))

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> Timeline:
        """Build a Timeline from a decoded JSON document (camelCase or snake_case keys)."""
        if not isinstance(doc, Mapping):
            raise TimelineError("Timeline document must be an object")

        frames_raw = _pick(doc, "frames")
        if frames_raw is None:
            raise TimelineError("Timeline document has no 'frames' key")
        if not isinstance(frames_raw, list):
            raise TimelineError("'frames' must be a list")

        rounds_raw = _pick(doc, "rounds") or []
        if not isinstance(rounds_raw, list):
            raise TimelineError("'rounds' must be a list")

        tick_rate = _as_float(_pick(doc, "tickRate", "tick_rate")) or float(CS2_TICK_RATE)
        frames = [_frame_from_dict(f) for f in _records(frames_raw, "frames")]
        frames.sort(key=lambda f: f.tick)

        duration = _as_float(_pick(doc, "duration"))
        if duration is None:
            duration = frames[-1].time if frames else 0.0

        return cls(
            tick_rate=tick_rate,
            duration=duration,
            rounds=[_round_from_dict(r) for r in _records(rounds_raw, "rounds")],
            frames=frames,
            map_name=_pick(doc, "mapName", "map_name") or "",
            player_blind_events=list(_pick(doc, "playerBlindEvents", "player_blind_events") or []),
            disconnect_events=list(_pick(doc, "disconnectEvents", "disconnect_events") or []),
            connect_events=list(_pick(doc, "connectEvents", "connect_events") or []),
            grenades=list(_pick(doc, "grenades") or []),
            raw_events=list(_pick(doc, "rawEvents", "raw_events", "events") or []),
        )


def _pick(doc: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in doc and doc[key] is not None:
            return doc[key]
    return default


def _records(value: Any, what: str) -> list[Mapping[str, Any]]:
    """A list of objects, or TimelineError."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise TimelineError(f"'{what}' must be a list, got {type(value).__name__}")
    for item in value:
        if not isinstance(item, Mapping):
            raise TimelineError(f"Every entry of '{what}' must be an object, got {type(item).__name__}")
    return value


def _position_from_dict(data: Any) -> Position:
    if isinstance(data, Mapping):
        return Position(
            x=_as_float(data.get("x")) or 0.0,
            y=_as_float(data.get("y")) or 0.0,
            z=_as_float(data.get("z")),
        )
    if isinstance(data, (list, tuple)) and len(data) >= 2:
        return Position(float(data[0]), float(data[1]), float(data[2]) if len(data) > 2 else None)
    return Position(0.0, 0.0)


def _player_from_dict(data: Mapping[str, Any]) -> PlayerState:
    equipment = _pick(data, "equipment") or {}
    if not isinstance(equipment, Mapping):
        raise TimelineError(f"Player equipment must be an object, got {type(equipment).__name__}")
    grenades = _pick(equipment, "grenades")
    return PlayerState(
        id=_as_int(_pick(data, "id", "steamid", "player_id")) or 0,
        name=str(_pick(data, "name", default="")),
        team=Team.parse(_pick(data, "team")),
        hp=_int_or(_pick(data, "hp", "health"), 100),
        is_alive=bool(_pick(data, "isAlive", "is_alive", default=True)),
        position=_position_from_dict(_pick(data, "position")),
        view_angle=_as_float(_pick(data, "viewAngle", "view_angle", "yaw")) or 0.0,
        has_bomb=bool(_pick(data, "hasBomb", "has_bomb", default=False)),
        flash_duration=_as_float(_pick(data, "flashDuration", "flash_duration")) or 0.0,
        shots_fired=_as_int(_pick(data, "shotsFired", "shots_fired")) or 0,
        equipment=Equipment(
            primary=_pick(equipment, "primary"),
            grenades=list(grenades) if isinstance(grenades, list) else [],
        ),
        money=_as_int(_pick(data, "money")),
        has_defuser=bool(_pick(data, "hasDefuser", "has_defuser", default=False)),
        has_helmet=bool(_pick(data, "hasHelmet", "has_helmet", default=False)),
        is_connected=bool(_pick(data, "isConnected", "is_connected", default=True)),
        is_scoped=bool(_pick(data, "isScoped", "is_scoped", default=False)),
    )


def _event_from_dict(data: Mapping[str, Any], frame_tick: int) -> GameEvent:
    attacker_team = _pick(data, "attackerTeam", "attacker_team")
    victim_team = _pick(data, "victimTeam", "victim_team")
    return GameEvent(
        type=str(_pick(data, "type", default="")),
        tick=_int_or(_pick(data, "tick"), frame_tick),
        description=str(_pick(data, "description", default="")),
        player_name=_pick(data, "playerName", "player_name"),
        message=_pick(data, "message"),
        weapon=_pick(data, "weapon"),
        attacker_name=_pick(data, "attackerName", "attacker_name"),
        victim_name=_pick(data, "victimName", "victim_name"),
        attacker_team=Team.parse(attacker_team) if attacker_team is not None else None,
        victim_team=Team.parse(victim_team) if victim_team is not None else None,
        damage=_as_float(_pick(data, "damage")),
        is_headshot=bool(_pick(data, "isHeadshot", "is_headshot", default=False)),
    )


def _frame_from_dict(data: Mapping[str, Any]) -> MatchFrame:
    tick = _as_int(_pick(data, "tick"))
    if tick is None:
        raise TimelineError(f"Frame without a numeric tick: {dict(data)!r:.80}")
    return MatchFrame(
        tick=tick,
        time=_as_float(_pick(data, "time")) or 0.0,
        players=[_player_from_dict(p) for p in _records(_pick(data, "players"), "players")],
        events=[_event_from_dict(e, tick) for e in _records(_pick(data, "events"), "events")],
    )


def _round_from_dict(data: Mapping[str, Any]) -> Round:
    winner = _pick(data, "winner")
    return Round(
        number=_as_int(_pick(data, "number", "round_num", "round")) or 0,
        start_tick=_as_int(_pick(data, "startTick", "start_tick")) or 0,
        freeze_end_tick=_as_int(_pick(data, "freezeEndTick", "freeze_end_tick")),
        end_tick=_as_int(_pick(data, "endTick", "end_tick")),
        winner=Team.parse(winner) if winner is not None else None,
    )


def load_timeline(path: Path | str) -> Timeline:
    """Load a Timeline from a ``.json`` or ``.json.gz`` file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Timeline file not found: {path}")

    try:
        if path.suffix == ".gz":
            with gzip.open(path, "rt", encoding="utf-8") as f:
                doc = json.load(f)
        else:
            with open(path, encoding="utf-8") as f:
                doc = json.load(f)
    except json.JSONDecodeError as e:
        raise TimelineError(f"Invalid timeline JSON in {path}: {e}") from e

    timeline = Timeline.from_dict(doc)
    logger.info(
        f"Loaded timeline {path.name}: {len(timeline.frames)} frames, "
        f"{len(timeline.rounds)} rounds @ {timeline.tick_rate:g} tps"
    )
    return timeline
