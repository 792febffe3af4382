"""
Mid-Round Inactivity Detection (experimental)

Per player per round, sliding windows over sampled frames measure:
- displacement (3D path length, short window)
- aim movement (wrap-aware view angle deltas, short window)
- actions (shots, utility, plants, defuses; long window)
- recent damage dealt or taken (long window)

Any real activity resets the in-progress segment. Otherwise inactivity
accumulates and is scored per sample, discounted for legitimate reasons to
stand still: holding an angle, being scoped, saving at the end of a round,
or being flashed. Segments reaching the flag duration are emitted.
"""

import logging
import math
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field

import numpy as np

from griefwatch.core.config import InactivityConfig
from griefwatch.core.constants import ACTION_EVENT_TYPES, EVENT_DAMAGE, Team
from griefwatch.core.timeline import Round, Timeline
from griefwatch.core.utils import clamp, record_to_dict, sample_frames, timed

logger = logging.getLogger(__name__)

REASON_NO_MOVEMENT_NO_AIM = "no_movement_no_aim"
REASON_NO_MOVEMENT_LOW_AIM = "no_movement_low_aim"
REASON_NO_ACTIONS = "no_actions"
REASON_COMBINED = "combined"


@dataclass
class InactiveSegment:
    round: int
    player_id: int
    player_name: str
    start_tick: int
    end_tick: int
    start_time: float
    end_time: float
    duration: float
    score: float
    confidence: float
    features_summary: dict[str, float]
    reason: str

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class InactivityResult:
    """One player's inactivity verdict for one round."""

    round: int
    player_id: int
    player_name: str
    segments: list[InactiveSegment] = field(default_factory=list)
    round_score: float = 0.0
    flagged: bool = False
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class ActivityFeatures:
    displacement: float
    aim_delta: float
    action_count: int
    damage_events: int
    is_scoped: bool
    flash_duration: float
    round_time_remaining: float


@dataclass
class _Samples:
    """Column-wise samples for one player; only alive snapshots are kept."""

    name: str
    ticks: list[int] = field(default_factory=list)
    times: list[float] = field(default_factory=list)
    xyz: list[tuple[float, float, float]] = field(default_factory=list)
    angles: list[float] = field(default_factory=list)
    shots: list[int] = field(default_factory=list)
    scoped: list[bool] = field(default_factory=list)
    flash: list[float] = field(default_factory=list)


def path_length(xyz: np.ndarray) -> float:
    if len(xyz) < 2:
        return 0.0
    return float(np.linalg.norm(np.diff(xyz, axis=0), axis=1).sum())


def aim_movement(angles: np.ndarray) -> float:
    if len(angles) < 2:
        return 0.0
    deltas = np.abs(np.diff(angles)) % 360.0
    return float(np.minimum(deltas, 360.0 - deltas).sum())


def inactivity_score(features: ActivityFeatures, duration: float, config: InactivityConfig) -> float:
    """Weighted inactivity score in [0, 1]; higher means more inactive."""
    w = config.weights
    displacement = (
        1.0 - features.displacement / config.max_displacement_hold
        if features.displacement < config.max_displacement_hold
        else 0.0
    )
    aim = (
        1.0 - features.aim_delta / config.min_aim_active_hold
        if features.aim_delta < config.min_aim_active_hold
        else 0.0
    )
    if features.action_count == 0:
        actions = 1.0
    else:
        actions = max(0.0, 1.0 - features.action_count / config.actions_normalizer)
    duration_term = min(1.0, duration / config.afk_time_high_confidence)

    score = (
        displacement * w.displacement
        + aim * w.aim_movement
        + actions * w.actions
        + duration_term * w.duration
    )

    # Holding an angle
    if features.aim_delta >= config.min_aim_active_hold:
        score *= 0.3
    elif features.aim_delta >= config.min_aim_active_hold * 0.5:
        score *= 0.6
    if features.is_scoped:
        score *= config.scoped_reduction
    if features.round_time_remaining < config.saving_time_threshold:
        score *= config.saving_reduction
    if features.flash_duration > config.flashed_threshold:
        score *= config.flashed_reduction

    return clamp(score)


def segment_confidence(duration: float, config: InactivityConfig) -> float:
    if duration >= config.afk_time_high_confidence:
        return 0.9
    return min(0.9, 0.5 + (duration / config.afk_time_high_confidence) * 0.4)


def classify_reason(displacement: float, aim_delta: float, actions: float, damage: float) -> str:
    if displacement < 10 and aim_delta < 2:
        return REASON_NO_MOVEMENT_NO_AIM
    if displacement < 10 and aim_delta < 5:
        return REASON_NO_MOVEMENT_LOW_AIM
    if actions == 0 and damage == 0:
        return REASON_NO_ACTIONS
    return REASON_COMBINED


class InactivityDetector:
    def __init__(self, timeline: Timeline, config: InactivityConfig | None = None):
        self.timeline = timeline
        self.config = config or InactivityConfig()

    @timed
    def detect(self) -> list[InactivityResult]:
        results: list[InactivityResult] = []
        for rnd in self.timeline.rounds:
            results.extend(self.analyze_round(rnd))
        flagged = sum(r.flagged for r in results)
        logger.info(f"Mid-round inactivity: {flagged} flagged player-rounds of {len(results)}")
        return results

    def analyze_round(self, rnd: Round) -> list[InactivityResult]:
        if rnd.freeze_end_tick is None or rnd.end_tick is None:
            return []
        frames = self.timeline.frames_between(rnd.freeze_end_tick, rnd.end_tick)
        if not frames:
            return []

        sampled = sample_frames(frames, self.timeline.tick_rate, self.config.sampling_hz)
        action_ticks, damage_ticks = self._index_activity(frames)

        players: dict[int, _Samples] = {}
        for frame in sampled:
            for p in frame.players:
                if p.team == Team.SPECTATOR or not p.is_alive:
                    continue
                s = players.setdefault(p.id, _Samples(name=p.name))
                s.ticks.append(frame.tick)
                s.times.append(frame.time)
                s.xyz.append((p.position.x, p.position.y, p.position.z or 0.0))
                s.angles.append(p.view_angle)
                s.shots.append(p.shots_fired)
                s.scoped.append(p.is_scoped)
                s.flash.append(p.flash_duration)

        round_end_time = frames[-1].time
        results = []
        for player_id, samples in players.items():
            if len(samples.ticks) < 2:
                continue
            results.append(
                self._analyze_player(
                    rnd.number,
                    player_id,
                    samples,
                    action_ticks.get(player_id, []),
                    damage_ticks.get(player_id, []),
                    round_end_time,
                )
            )
        return results

    def _index_activity(self, frames) -> tuple[dict[int, list[int]], dict[int, list[int]]]:
        """Ticks of actions and damage involvement per player id, from frame events."""
        ids_by_name: dict[str, int] = {}
        for frame in frames:
            for p in frame.players:
                ids_by_name.setdefault(p.name, p.id)

        actions: dict[int, list[int]] = {}
        damage: dict[int, list[int]] = {}
        for frame in frames:
            for event in frame.events:
                if event.type in ACTION_EVENT_TYPES:
                    pid = ids_by_name.get(event.player_name or event.attacker_name or "")
                    if pid is not None:
                        actions.setdefault(pid, []).append(event.tick)
                elif event.type == EVENT_DAMAGE:
                    for name in (event.attacker_name, event.victim_name):
                        pid = ids_by_name.get(name or "")
                        if pid is not None:
                            damage.setdefault(pid, []).append(event.tick)
        for ticks in (*actions.values(), *damage.values()):
            ticks.sort()
        return actions, damage

    def _features_at(
        self,
        i: int,
        s: _Samples,
        xyz: np.ndarray,
        angles: np.ndarray,
        action_ticks: list[int],
        damage_ticks: list[int],
        round_end_time: float,
    ) -> ActivityFeatures:
        tick_rate = self.timeline.tick_rate
        tick = s.ticks[i]
        short_start = tick - math.ceil(self.config.window_short_seconds * tick_rate)
        long_start = tick - math.ceil(self.config.window_long_seconds * tick_rate)

        lo_short = bisect_left(s.ticks, short_start)
        lo_long = bisect_left(s.ticks, long_start)
        shooting_samples = sum(1 for shots in s.shots[lo_long : i + 1] if shots > 0)
        action_events = bisect_right(action_ticks, tick) - bisect_left(action_ticks, long_start)
        damage_events = bisect_right(damage_ticks, tick) - bisect_left(damage_ticks, long_start)

        return ActivityFeatures(
            displacement=path_length(xyz[lo_short : i + 1]),
            aim_delta=aim_movement(angles[lo_short : i + 1]),
            action_count=shooting_samples + action_events,
            damage_events=damage_events,
            is_scoped=s.scoped[i],
            flash_duration=s.flash[i],
            round_time_remaining=max(0.0, round_end_time - s.times[i]),
        )

    def _is_active(self, f: ActivityFeatures) -> bool:
        return (
            f.displacement >= self.config.min_displacement_active
            or f.aim_delta >= self.config.min_aim_active
            or f.action_count > 0
            or f.damage_events > 0
        )

    def _analyze_player(
        self,
        round_number: int,
        player_id: int,
        s: _Samples,
        action_ticks: list[int],
        damage_ticks: list[int],
        round_end_time: float,
    ) -> InactivityResult:
        config = self.config
        xyz = np.array(s.xyz, dtype=float)
        angles = np.array(s.angles, dtype=float)

        segments: list[InactiveSegment] = []
        scores: list[float] = []
        current: list[tuple[int, ActivityFeatures, float]] = []

        def close(end_index: int) -> None:
            if not current:
                return
            start_index = current[0][0]
            duration = s.times[end_index] - s.times[start_index]
            if duration >= config.afk_time_to_flag:
                segments.append(self._build_segment(round_number, player_id, s, start_index, end_index, current))
            current.clear()

        for i in range(1, len(s.ticks)):
            features = self._features_at(i, s, xyz, angles, action_ticks, damage_ticks, round_end_time)
            if self._is_active(features):
                close(i)
                continue
            duration = s.times[i] - s.times[current[0][0]] if current else 0.0
            score = inactivity_score(features, duration, config)
            current.append((i, features, score))
            scores.append(score)
        close(len(s.ticks) - 1)

        max_confidence = max((seg.confidence for seg in segments), default=0.0)
        return InactivityResult(
            round=round_number,
            player_id=player_id,
            player_name=s.name,
            segments=segments,
            round_score=float(np.mean(scores)) if scores else 0.0,
            flagged=bool(segments) and max_confidence >= config.flag_confidence,
            confidence=max_confidence,
        )

    def _build_segment(
        self,
        round_number: int,
        player_id: int,
        s: _Samples,
        start_index: int,
        end_index: int,
        window: list[tuple[int, ActivityFeatures, float]],
    ) -> InactiveSegment:
        features = [f for _, f, _ in window]
        summary = {
            "avg_displacement": float(np.mean([f.displacement for f in features])),
            "avg_aim_delta": float(np.mean([f.aim_delta for f in features])),
            "total_actions": int(sum(f.action_count for f in features)),
            "total_damage_events": int(sum(f.damage_events for f in features)),
        }
        duration = s.times[end_index] - s.times[start_index]
        logger.debug(f"Inactive segment: {s.name} round {round_number} for {duration:.1f}s")
        return InactiveSegment(
            round=round_number,
            player_id=player_id,
            player_name=s.name,
            start_tick=s.ticks[start_index],
            end_tick=s.ticks[end_index],
            start_time=s.times[start_index],
            end_time=s.times[end_index],
            duration=duration,
            score=max(score for _, _, score in window),
            confidence=segment_confidence(duration, self.config),
            features_summary=summary,
            reason=classify_reason(
                summary["avg_displacement"],
                summary["avg_aim_delta"],
                summary["total_actions"],
                summary["total_damage_events"],
            ),
        )


def detect_mid_round_inactivity(
    timeline: Timeline, config: InactivityConfig | None = None
) -> list[InactivityResult]:
    """Convenience function to run mid-round inactivity detection on every round."""
    return InactivityDetector(timeline, config).detect()
