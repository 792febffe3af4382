"""
Objective Sabotage Detection (experimental)

Map-agnostic bomb griefing heuristics, keyed off bomb possession, plant and
defuse state and team-relative positions:

- BombCarrierStall: carrying the bomb, barely moving, with time and no pressure
- NoPlantOpportunity: carrier grouped up with teammates but never plants
- BadBombDrop: unforced drops (teammates around, calm, or an enemy grabs it)
- DefuseRefusal: CT standing on the planted bomb with time to defuse, not defusing
- DefuseAbortLowPressure: defuse started and abandoned quickly without pressure

Each finding is discounted by a pressure score (damage taken, teammates dying,
firefight noise) and a hopelessness score (lopsided numbers, clock), because
the same behavior is legitimate in those contexts.
"""

import logging
import math
from bisect import bisect_left, bisect_right
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum

import numpy as np

from griefwatch.core.config import ObjectiveConfig
from griefwatch.core.constants import (
    EVENT_BOMB_DROP,
    EVENT_BOMB_PICKUP,
    EVENT_DAMAGE,
    EVENT_DEFUSE,
    EVENT_DEFUSE_START,
    EVENT_DEFUSE_STOP,
    EVENT_KILL,
    EVENT_PLANT,
    EVENT_WEAPON_FIRE,
    Team,
)
from griefwatch.core.timeline import GameEvent, MatchFrame, PlayerState, Position, Round, Timeline, normalize_raw_events
from griefwatch.core.utils import clamp, distance_2d, record_to_dict, sample_frames, timed
from griefwatch.domains.friendly_fire import parse_kill_description

logger = logging.getLogger(__name__)

# Decoder event names that map onto objective event types
RAW_EVENT_TYPES = {
    "bomb_pickup": EVENT_BOMB_PICKUP,
    "bomb_dropped": EVENT_BOMB_DROP,
    "bomb_planted": EVENT_PLANT,
    "bomb_defused": EVENT_DEFUSE,
    "bomb_begindefuse": EVENT_DEFUSE_START,
    "bomb_abortdefuse": EVENT_DEFUSE_STOP,
}


class ObjectiveEventType(StrEnum):
    BOMB_CARRIER_STALL = "BombCarrierStall"
    NO_PLANT_OPPORTUNITY = "NoPlantOpportunity"
    BAD_BOMB_DROP = "BadBombDrop"
    DEFUSE_REFUSAL = "DefuseRefusal"
    DEFUSE_ABORT = "DefuseAbortLowPressure"


_WEIGHT_FIELDS = {
    ObjectiveEventType.BOMB_CARRIER_STALL: "bomb_carrier_stall",
    ObjectiveEventType.NO_PLANT_OPPORTUNITY: "no_plant_opportunity",
    ObjectiveEventType.BAD_BOMB_DROP: "bad_bomb_drop",
    ObjectiveEventType.DEFUSE_REFUSAL: "defuse_refusal",
    ObjectiveEventType.DEFUSE_ABORT: "defuse_abort",
}


# ============================================================================
# Output models
# ============================================================================


@dataclass
class ObjectiveEvent:
    type: ObjectiveEventType
    round: int
    start_tick: int
    end_tick: int
    start_time: float
    end_time: float
    duration: float
    actor_id: int
    actor_name: str
    confidence: float
    score: float
    features_summary: dict[str, float]
    human_reason: str

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class PlayerObjectiveResult:
    round: int
    player_id: int
    player_name: str
    events: list[ObjectiveEvent] = field(default_factory=list)
    objective_score_round: float = 0.0
    flagged: bool = False
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class ObjectiveResult:
    round: int
    players: list[PlayerObjectiveResult] = field(default_factory=list)

    @property
    def events(self) -> list[ObjectiveEvent]:
        return [event for player in self.players for event in player.events]

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class ObjectiveFeatures:
    time_left: float
    alive_teammates: int
    alive_enemies: int
    pressure: float
    hopeless: float
    nearby_teammates: int
    movement_low: bool

    def summary(self, **extra: float) -> dict[str, float]:
        data = {
            "time_left": self.time_left,
            "alive_teammates": self.alive_teammates,
            "alive_enemies": self.alive_enemies,
            "pressure_score": self.pressure,
            "hopeless_score": self.hopeless,
        }
        data.update(extra)
        return data


# ============================================================================
# Round context
# ============================================================================


@dataclass
class _BombState:
    plant_tick: int | None = None
    plant_time: float | None = None
    plant_position: Position | None = None
    explosion_time: float | None = None

    def planted_at(self, tick: int) -> bool:
        return self.plant_tick is not None and tick >= self.plant_tick


class _RoundContext:
    """Everything the sub-detectors need about one round."""

    def __init__(self, timeline: Timeline, rnd: Round, config: ObjectiveConfig, raw_events: list[GameEvent]):
        self.timeline = timeline
        self.round = rnd
        self.config = config
        self.frames = timeline.frames_between(rnd.freeze_end_tick, rnd.end_tick)
        self.sampled = sample_frames(self.frames, timeline.tick_rate, config.sampling_hz)
        self.round_end_time = self.frames[-1].time if self.frames else 0.0

        events = [e for f in self.frames for e in f.events]
        events += [e for e in raw_events if rnd.freeze_end_tick <= e.tick <= rnd.end_tick]
        self.events = sorted(events, key=lambda e: e.tick)
        self._event_ticks = [e.tick for e in self.events]

        # Team membership as of the first frame the player appears in
        self.teams: dict[int, Team] = {}
        self.names: dict[int, str] = {}
        self.history: dict[int, list[tuple[int, float, Position]]] = defaultdict(list)
        for frame in self.sampled:
            for p in frame.players:
                if p.team == Team.SPECTATOR:
                    continue
                self.teams.setdefault(p.id, p.team)
                self.names.setdefault(p.id, p.name)
                self.history[p.id].append((frame.tick, frame.time, p.position))
        self._history_ticks = {pid: [h[0] for h in hist] for pid, hist in self.history.items()}

        self.bomb = self._bomb_state()

    def _bomb_state(self) -> _BombState:
        state = _BombState()
        for event in self.events:
            if event.type != EVENT_PLANT:
                continue
            state.plant_tick = event.tick
            frame = self.timeline.frame_at_or_before(event.tick)
            state.plant_time = frame.time if frame else self.timeline.tick_to_time(event.tick)
            planter = frame.player_by_name(event.player_name or "") if frame else None
            if planter is not None:
                state.plant_position = planter.position
            state.explosion_time = state.plant_time + self.config.bomb_timer_seconds
            break
        return state

    def ticks(self, seconds: float) -> int:
        return math.ceil(seconds * self.timeline.tick_rate)

    def events_between(self, start_tick: int, end_tick: int) -> list[GameEvent]:
        lo = bisect_left(self._event_ticks, start_tick)
        hi = bisect_right(self._event_ticks, end_tick)
        return self.events[lo:hi]

    def team_names(self, team: Team) -> set[str]:
        return {self.names[pid] for pid, t in self.teams.items() if t == team}

    def pressure(self, player: PlayerState, tick: int) -> float:
        config = self.config
        window = self.events_between(tick - self.ticks(config.pressure_window_seconds), tick)

        damage = sum(e.damage or 0.0 for e in window if e.type == EVENT_DAMAGE and e.victim_name == player.name)
        score = min(1.0, damage / 100.0) if damage >= config.pressure_damage_threshold else 0.0

        teammates = self.team_names(player.team) - {player.name}
        death_window = self.events_between(tick - self.ticks(config.pressure_death_window_seconds), tick)
        deaths = sum(1 for e in death_window if e.type == EVENT_KILL and _kill_victim(e) in teammates)
        score = max(score, deaths * 0.3)

        fires = sum(1 for e in window if e.type == EVENT_WEAPON_FIRE)
        if fires > config.pressure_fire_count:
            score = max(score, 0.4)
        return min(1.0, score)

    def movement_low(self, player_id: int, tick: int) -> bool:
        history = self.history.get(player_id, [])
        ticks = self._history_ticks.get(player_id, [])
        lo = bisect_left(ticks, tick - self.ticks(self.config.movement_window_seconds))
        hi = bisect_right(ticks, tick)
        window = history[lo:hi]
        if len(window) < 2:
            return True
        (_, t0, p0), (_, t1, p1) = window[0], window[-1]
        if t1 - t0 <= 0:
            return True
        return distance_2d(p0, p1) / (t1 - t0) < self.config.low_speed_threshold

    def features(self, player: PlayerState, frame: MatchFrame) -> ObjectiveFeatures:
        config = self.config
        time_left = max(0.0, self.round_end_time - frame.time)
        teammates = [p for p in frame.players if p.team == player.team and p.id != player.id and p.is_alive]
        enemies = [p for p in frame.players if p.team not in (player.team, Team.SPECTATOR) and p.is_alive]

        hopeless = 0.0
        if enemies and not teammates:
            if len(enemies) / (len(teammates) + 1) >= config.hopeless_teammate_ratio:
                hopeless += 0.5
        planted = self.bomb.planted_at(frame.tick)
        if not planted and time_left < config.hopeless_time_pre_plant:
            hopeless += 0.3
        if planted and time_left < config.hopeless_time_post_plant:
            hopeless += 0.3

        nearby = sum(1 for t in teammates if distance_2d(t.position, player.position) <= config.near_teammate_radius)
        return ObjectiveFeatures(
            time_left=time_left,
            alive_teammates=len(teammates),
            alive_enemies=len(enemies),
            pressure=self.pressure(player, frame.tick),
            hopeless=min(1.0, hopeless),
            nearby_teammates=nearby,
            movement_low=self.movement_low(player.id, frame.tick),
        )

    def pre_plant_frames(self) -> list[MatchFrame]:
        if self.bomb.plant_tick is None:
            return self.sampled
        return [f for f in self.sampled if f.tick < self.bomb.plant_tick]

    def post_plant_frames(self) -> list[MatchFrame]:
        if self.bomb.plant_tick is None:
            return []
        return [f for f in self.sampled if f.tick >= self.bomb.plant_tick]


def _kill_victim(event: GameEvent) -> str | None:
    if event.victim_name:
        return event.victim_name
    parsed = parse_kill_description(event.description or "")
    return parsed[1] if parsed else None


def _centroid(positions: list[Position]) -> Position:
    xs = np.array([p.x for p in positions])
    ys = np.array([p.y for p in positions])
    return Position(float(xs.mean()), float(ys.mean()))


# ============================================================================
# Detector
# ============================================================================


class ObjectiveSabotageDetector:
    def __init__(self, timeline: Timeline, config: ObjectiveConfig | None = None):
        self.timeline = timeline
        self.config = config or ObjectiveConfig()
        self._raw_events = self._normalize_raw()

    def _normalize_raw(self) -> list[GameEvent]:
        events = []
        for raw in normalize_raw_events(self.timeline.raw_events):
            event_type = RAW_EVENT_TYPES.get(raw.name)
            if event_type is None:
                continue
            events.append(GameEvent(type=event_type, tick=raw.tick, player_name=raw.player_name))
        return events

    @timed
    def detect(self) -> list[ObjectiveResult]:
        per_round: list[tuple[Round, list[ObjectiveEvent]]] = []
        for rnd in self.timeline.rounds:
            if rnd.freeze_end_tick is None or rnd.end_tick is None:
                continue
            ctx = _RoundContext(self.timeline, rnd, self.config, self._raw_events)
            if not ctx.sampled:
                continue
            per_round.append((rnd, self._analyze_round(ctx)))

        self._apply_repeat_pattern([e for _, events in per_round for e in events])
        results = [self._summarize_round(rnd, events) for rnd, events in per_round]
        total = sum(len(r.events) for r in results)
        logger.info(f"Found {total} objective sabotage events")
        return results

    def _analyze_round(self, ctx: _RoundContext) -> list[ObjectiveEvent]:
        events: list[ObjectiveEvent] = []
        for player_id in sorted(ctx.teams):
            events += self._bomb_carrier_stall(ctx, player_id)
            events += self._no_plant_opportunity(ctx, player_id)
            events += self._bad_bomb_drop(ctx, player_id)
            if ctx.teams[player_id] == Team.CT and ctx.bomb.plant_tick is not None:
                events += self._defuse_refusal(ctx, player_id)
                events += self._defuse_abort(ctx, player_id)
        return events

    def _event(
        self,
        ctx: _RoundContext,
        event_type: ObjectiveEventType,
        player_id: int,
        start: MatchFrame,
        end: MatchFrame,
        score: float,
        confidence: float,
        summary: dict[str, float],
        reason: str,
    ) -> ObjectiveEvent:
        return ObjectiveEvent(
            type=event_type,
            round=ctx.round.number,
            start_tick=start.tick,
            end_tick=end.tick,
            start_time=start.time,
            end_time=end.time,
            duration=end.time - start.time,
            actor_id=player_id,
            actor_name=ctx.names.get(player_id, "Unknown"),
            confidence=clamp(confidence),
            score=clamp(score),
            features_summary=summary,
            human_reason=reason,
        )

    # ------------------------------------------------------------------
    # Pre-plant
    # ------------------------------------------------------------------

    def _bomb_carrier_stall(self, ctx: _RoundContext, player_id: int) -> list[ObjectiveEvent]:
        config = self.config
        found = []
        start: MatchFrame | None = None
        last: tuple[MatchFrame, ObjectiveFeatures] | None = None

        def close() -> None:
            nonlocal start
            if start is not None and last is not None:
                end_frame, features = last
                duration = end_frame.time - start.time
                if duration >= config.stall_min_seconds:
                    score = min(1.0, duration / 20.0)
                    confidence = score * (1 - features.hopeless) * (1 - features.pressure * 0.5)
                    found.append(
                        self._event(
                            ctx,
                            ObjectiveEventType.BOMB_CARRIER_STALL,
                            player_id,
                            start,
                            end_frame,
                            score,
                            confidence,
                            features.summary(movement_low=int(features.movement_low)),
                            f"Carried bomb for {duration:.1f}s without planting "
                            f"({features.time_left:.1f}s remaining, low pressure)",
                        )
                    )
            start = None

        for frame in ctx.pre_plant_frames():
            player = frame.player_by_id(player_id)
            if player is None or not player.is_alive or not player.has_bomb:
                close()
                continue
            features = ctx.features(player, frame)
            stalling = (
                features.time_left > config.plant_buffer_seconds
                and features.movement_low
                and features.pressure < config.max_pressure
                and features.hopeless < config.max_hopeless
            )
            if stalling:
                if start is None:
                    start = frame
                last = (frame, features)
            else:
                close()
        close()
        return found

    def _no_plant_opportunity(self, ctx: _RoundContext, player_id: int) -> list[ObjectiveEvent]:
        config = self.config
        found = []
        start: MatchFrame | None = None
        centroid: Position | None = None

        for frame in ctx.pre_plant_frames():
            player = frame.player_by_id(player_id)
            if player is None or not player.is_alive or not player.has_bomb:
                start = None
                continue

            cluster = [
                p
                for p in frame.players
                if p.team == player.team
                and p.id != player.id
                and p.is_alive
                and distance_2d(p.position, player.position) <= config.site_cluster_radius
            ]
            if len(cluster) < config.site_cluster_min_teammates:
                start = None
                continue

            current = _centroid([player.position] + [p.position for p in cluster])
            if start is None or (centroid is not None and distance_2d(centroid, current) > config.cluster_drift_max):
                start, centroid = frame, current

            duration = frame.time - start.time
            if duration < config.opportunity_min_seconds:
                continue

            planted = any(
                e.type == EVENT_PLANT and e.player_name == player.name
                for e in ctx.events_between(start.tick, frame.tick)
            )
            features = ctx.features(player, frame)
            if (
                not planted
                and features.time_left >= config.plant_buffer_seconds
                and features.pressure < config.max_pressure
                and features.hopeless < config.max_hopeless
            ):
                score = min(1.0, duration / 15.0)
                confidence = score * (1 - features.hopeless) * (1 - features.pressure * 0.5)
                found.append(
                    self._event(
                        ctx,
                        ObjectiveEventType.NO_PLANT_OPPORTUNITY,
                        player_id,
                        start,
                        frame,
                        score,
                        confidence,
                        features.summary(nearby_teammates=len(cluster)),
                        f"Had plant opportunity for {duration:.1f}s ({len(cluster)} teammates nearby, "
                        f"{features.time_left:.1f}s remaining) but didn't plant",
                    )
                )
                start = None
        return found

    def _bad_bomb_drop(self, ctx: _RoundContext, player_id: int) -> list[ObjectiveEvent]:
        config = self.config
        found = []
        previous: PlayerState | None = None
        previous_tick = 0

        for frame in ctx.sampled:
            player = frame.player_by_id(player_id)
            if player is None:
                continue
            dropped = previous is not None and previous.has_bomb and not player.has_bomb and player.is_alive
            planted_here = any(
                e.type == EVENT_PLANT and e.player_name == player.name
                for e in ctx.events_between(previous_tick, frame.tick)
            )
            previous, previous_tick = player, frame.tick
            if not dropped or planted_here:
                continue

            features = ctx.features(player, frame)
            score = 0.0
            reasons = []
            if features.nearby_teammates >= 1 and features.pressure < 0.3:
                score += 0.4
                reasons.append("teammates nearby")

            own_team = ctx.team_names(player.team)
            pickup_window = ctx.events_between(frame.tick, frame.tick + ctx.ticks(config.drop_pickup_window_seconds))
            enemy_pickup = any(
                e.type == EVENT_BOMB_PICKUP and e.player_name and e.player_name not in own_team
                for e in pickup_window
            )
            if enemy_pickup:
                score += 0.6
                reasons.append("enemy picked up")
            if features.time_left > 30 and features.pressure < 0.3:
                score += 0.3
                reasons.append("low pressure")

            if score > 0.3:
                found.append(
                    self._event(
                        ctx,
                        ObjectiveEventType.BAD_BOMB_DROP,
                        player_id,
                        frame,
                        frame,
                        score,
                        min(1.0, score * (1 - features.pressure)),
                        features.summary(
                            nearby_teammates=features.nearby_teammates, enemy_pickup=int(enemy_pickup)
                        ),
                        f"Dropped bomb ({', '.join(reasons)})",
                    )
                )
        return found

    # ------------------------------------------------------------------
    # Post-plant (CT)
    # ------------------------------------------------------------------

    def _defuse_refusal(self, ctx: _RoundContext, player_id: int) -> list[ObjectiveEvent]:
        config = self.config
        bomb = ctx.bomb
        if bomb.plant_position is None:
            return []
        found = []
        start: MatchFrame | None = None

        for frame in ctx.post_plant_frames():
            player = frame.player_by_id(player_id)
            if player is None or not player.is_alive:
                start = None
                continue

            distance = distance_2d(player.position, bomb.plant_position)
            features = ctx.features(player, frame)
            defuse_time = config.defuse_with_kit_seconds if player.has_defuser else config.defuse_without_kit_seconds
            time_to_explosion = (
                bomb.explosion_time - frame.time if bomb.explosion_time is not None else features.time_left
            )
            opportunity = (
                distance <= config.defuse_radius
                and time_to_explosion >= defuse_time + config.defuse_buffer_seconds
                and features.pressure < config.max_pressure
                and features.hopeless < config.max_hopeless_defuse
            )
            if not opportunity:
                start = None
                continue
            if start is None:
                start = frame

            duration = frame.time - start.time
            if duration < config.defuse_opportunity_min_seconds:
                continue
            attempted = any(
                e.type in (EVENT_DEFUSE, EVENT_DEFUSE_START) and e.player_name == player.name
                for e in ctx.events_between(start.tick, frame.tick)
            )
            if attempted:
                continue

            score = min(1.0, duration / 10.0)
            confidence = score * (1 - features.hopeless) * (1 - features.pressure * 0.5)
            found.append(
                self._event(
                    ctx,
                    ObjectiveEventType.DEFUSE_REFUSAL,
                    player_id,
                    start,
                    frame,
                    score,
                    confidence,
                    {**features.summary(distance_to_bomb=distance), "time_left": time_to_explosion},
                    f"Near bomb for {duration:.1f}s ({time_to_explosion:.1f}s until explosion) but didn't defuse",
                )
            )
            start = None
        return found

    def _defuse_abort(self, ctx: _RoundContext, player_id: int) -> list[ObjectiveEvent]:
        config = self.config
        name = ctx.names.get(player_id)
        mine = [e for e in ctx.events if e.player_name == name and e.type in (EVENT_DEFUSE_START, EVENT_DEFUSE_STOP)]
        found = []
        started: GameEvent | None = None

        for event in mine:
            if event.type == EVENT_DEFUSE_START:
                if started is None:
                    started = event
                continue
            if started is None:
                continue

            start_frame = ctx.timeline.frame_at_or_before(started.tick)
            stop_frame = ctx.timeline.frame_at_or_before(event.tick)
            started = None
            if start_frame is None or stop_frame is None:
                continue
            player = stop_frame.player_by_id(player_id)
            if player is None:
                continue

            abort_duration = self.timeline.tick_to_time(event.tick) - self.timeline.tick_to_time(start_frame.tick)
            features = ctx.features(player, stop_frame)
            if (
                abort_duration >= config.abort_max_seconds
                or features.pressure >= 0.3
                or features.hopeless >= config.max_hopeless_defuse
            ):
                continue
            reattempt = any(
                e.type == EVENT_DEFUSE_START and e.player_name == name and e.tick > event.tick
                for e in ctx.events_between(event.tick + 1, event.tick + ctx.ticks(config.reattempt_window_seconds))
            )
            if reattempt:
                continue

            score = 0.7
            found.append(
                self._event(
                    ctx,
                    ObjectiveEventType.DEFUSE_ABORT,
                    player_id,
                    start_frame,
                    stop_frame,
                    score,
                    score * (1 - features.pressure),
                    features.summary(abort_duration=abort_duration),
                    f"Started defuse then aborted after {abort_duration:.1f}s (low pressure, no reattempt)",
                )
            )
        return found

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _apply_repeat_pattern(self, events: list[ObjectiveEvent]) -> None:
        """Escalate confidence when a player repeats the same pattern in later rounds."""
        first_round: dict[tuple[int, ObjectiveEventType], int] = {}
        for event in sorted(events, key=lambda e: (e.round, e.start_tick)):
            key = (event.actor_id, event.type)
            first = first_round.setdefault(key, event.round)
            if event.round > first:
                event.confidence = clamp(event.confidence * self.config.repeat_pattern_multiplier)

    def _summarize_round(self, rnd: Round, events: list[ObjectiveEvent]) -> ObjectiveResult:
        by_player: dict[int, list[ObjectiveEvent]] = defaultdict(list)
        for event in events:
            by_player[event.actor_id].append(event)

        players = []
        for player_id in sorted(by_player):
            player_events = by_player[player_id]
            round_score = sum(
                e.score * getattr(self.config.weights, _WEIGHT_FIELDS[e.type]) for e in player_events
            )
            players.append(
                PlayerObjectiveResult(
                    round=rnd.number,
                    player_id=player_id,
                    player_name=player_events[0].actor_name,
                    events=player_events,
                    objective_score_round=round_score,
                    flagged=round_score > 0.5 or any(e.confidence > 0.7 for e in player_events),
                    confidence=min(1.0, round_score),
                )
            )
        return ObjectiveResult(round=rnd.number, players=players)


def detect_objective_sabotage(timeline: Timeline, config: ObjectiveConfig | None = None) -> list[ObjectiveResult]:
    """Convenience function to run objective sabotage detection on every round."""
    return ObjectiveSabotageDetector(timeline, config).detect()
