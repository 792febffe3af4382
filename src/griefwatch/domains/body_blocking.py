"""
Body Blocking Detection (experimental)

Flags a teammate deliberately standing in another teammate's way. Every
ordered teammate pair (victim, blocker) is evaluated at each sampled tick:

- close distance, blocker inside the victim's forward cone
- victim shows movement intent (speed, acceleration spike, pushing forward)
- victim is stuck or being out-paced by the blocker
- not a legitimate stack rush (both running the same heading at speed)
- outside the post-freeze spawn window

Contiguous blocking ticks form an episode. Episodes long enough become
BlockEvents, scored from duration, lack of victim progress, blocker
stillness, failed pass attempts and re-blocks, minus rush and crowding
penalties. Every event keeps the numeric evidence in ``features_summary``.
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from griefwatch.core.config import BodyBlockConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import Position, Round, Timeline
from griefwatch.core.utils import angle_delta, clamp, heading_degrees, record_to_dict, sample_frames, timed

logger = logging.getLogger(__name__)


# ============================================================================
# Output models
# ============================================================================


@dataclass
class BlockEvent:
    round: int
    start_tick: int
    end_tick: int
    start_time: float
    end_time: float
    duration: float
    blocker_id: int
    blocker_name: str
    victim_id: int
    victim_name: str
    location_hint: str
    confidence: float
    features_summary: dict[str, float]
    reason: str

    def to_dict(self) -> dict:
        return record_to_dict(self)


@dataclass
class BodyBlockRoundResult:
    round: int
    events: list[BlockEvent] = field(default_factory=list)
    block_score_round: float = 0.0
    flagged: bool = False
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return record_to_dict(self)


# ============================================================================
# Kinematic tracking
# ============================================================================


@dataclass
class _Sample:
    tick: int
    time: float
    position: Position
    vx: float
    vy: float
    speed: float
    heading: float


@dataclass
class _Track:
    """Sliding window of kinematic samples for one player."""

    player_id: int
    name: str
    samples: deque = field(default_factory=deque)

    @property
    def current(self) -> _Sample:
        return self.samples[-1]

    @property
    def previous(self) -> _Sample | None:
        return self.samples[-2] if len(self.samples) >= 2 else None

    def push(self, tick: int, time: float, position: Position, window_ticks: int) -> None:
        vx = vy = speed = heading = 0.0
        if self.samples:
            prev = self.samples[-1]
            dt = time - prev.time
            if dt > 0:
                vx = (position.x - prev.position.x) / dt
                vy = (position.y - prev.position.y) / dt
                speed = math.hypot(vx, vy)
                if speed > 0.001:
                    heading = heading_degrees(vx, vy)
        self.samples.append(_Sample(tick, time, position, vx, vy, speed, heading))
        while self.samples and self.samples[0].tick < tick - window_ticks:
            self.samples.popleft()


@dataclass
class BlockingFeatures:
    distance: float
    frontness: float
    side_offset: float
    victim_speed: float
    blocker_speed: float
    relative_forward_speed: float
    victim_accel: float
    heading_change: float
    nearby_teammates: int
    is_stack_running: bool
    time_since_freeze: float


def extract_features(
    victim: _Track,
    blocker: _Track,
    others: list[_Track],
    time_since_freeze: float,
    config: BodyBlockConfig,
) -> BlockingFeatures | None:
    """Features for one ordered pair at the victim's latest sample."""
    if len(victim.samples) < 2 or len(blocker.samples) < 2:
        return None

    v, b = victim.current, blocker.current
    dx, dy = b.position.x - v.position.x, b.position.y - v.position.y
    distance = math.hypot(dx, dy)

    frontness = side_offset = relative_forward = 0.0
    if v.speed > 0.001:
        ux, uy = v.vx / v.speed, v.vy / v.speed
        if distance > 0.001:
            frontness = (ux * dx + uy * dy) / distance
        forward = ux * dx + uy * dy
        side_offset = math.hypot(dx - ux * forward, dy - uy * forward)
        relative_forward = (v.vx * ux + v.vy * uy) - (b.vx * ux + b.vy * uy)

    accel = heading_change = 0.0
    prev = victim.previous
    if prev is not None:
        dt = v.time - prev.time
        if dt > 0:
            accel = abs(v.speed - prev.speed) / dt
        heading_change = angle_delta(prev.heading, v.heading)

    nearby = sum(
        1
        for other in others
        if other.samples
        and math.hypot(other.current.position.x - v.position.x, other.current.position.y - v.position.y)
        <= config.crowded_radius
    )

    stack_running = (
        v.speed >= config.running_speed_min
        and b.speed >= config.running_speed_min
        and frontness > config.front_cone
        and angle_delta(v.heading, b.heading) < config.stack_heading_tolerance
    )

    return BlockingFeatures(
        distance=distance,
        frontness=frontness,
        side_offset=side_offset,
        victim_speed=v.speed,
        blocker_speed=b.speed,
        relative_forward_speed=relative_forward,
        victim_accel=accel,
        heading_change=heading_change,
        nearby_teammates=nearby,
        is_stack_running=stack_running,
        time_since_freeze=time_since_freeze,
    )


def is_blocking(f: BlockingFeatures, config: BodyBlockConfig) -> bool:
    intent = (
        f.victim_speed > config.intent_speed_min
        or f.victim_accel > config.accel_spike_threshold
        or f.relative_forward_speed > config.relative_speed_intent
    )
    obstructed = (
        f.victim_speed < config.stuck_speed_max or f.relative_forward_speed < -config.relative_speed_intent
    )
    return (
        f.distance < config.close_dist
        and f.frontness > config.front_cone
        and f.time_since_freeze >= config.spawn_ignore_seconds
        and intent
        and obstructed
        and not f.is_stack_running
    )


# ============================================================================
# Episode state machine
# ============================================================================


@dataclass
class _Episode:
    victim_id: int
    blocker_id: int
    start_tick: int
    start_time: float
    end_tick: int
    end_time: float
    samples: list[BlockingFeatures] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class _PairTracker:
    """Idle -> accumulating -> closed, per ordered (victim, blocker) pair."""

    def __init__(self, config: BodyBlockConfig):
        self.config = config
        self.open: dict[tuple[int, int], _Episode] = {}
        self.closed: list[_Episode] = []

    def observe(self, key: tuple[int, int], tick: int, time: float, features: BlockingFeatures | None) -> None:
        blocking = features is not None and is_blocking(features, self.config)
        episode = self.open.get(key)

        if not blocking:
            if episode is not None:
                self._close(key)
            return

        if episode is not None and time - episode.end_time > self.config.allow_gap_seconds:
            self._close(key)
            episode = None
        if episode is None:
            episode = _Episode(key[0], key[1], tick, time, tick, time)
            self.open[key] = episode
        episode.end_tick = tick
        episode.end_time = time
        episode.samples.append(features)

    def _close(self, key: tuple[int, int]) -> None:
        episode = self.open.pop(key)
        if episode.duration >= self.config.min_event_duration:
            self.closed.append(episode)

    def finish(self) -> list[_Episode]:
        for key in list(self.open):
            self._close(key)
        return sorted(self.closed, key=lambda e: (e.start_tick, e.victim_id, e.blocker_id))


# ============================================================================
# Scoring
# ============================================================================


def summarize_episode(episode: _Episode, config: BodyBlockConfig) -> dict[str, float]:
    samples = episode.samples
    distance = np.array([s.distance for s in samples])
    frontness = np.array([s.frontness for s in samples])
    victim_speed = np.array([s.victim_speed for s in samples])
    blocker_speed = np.array([s.blocker_speed for s in samples])

    failed_passes = 0
    reblocks = 0
    last_blocker_speed = samples[0].blocker_speed
    for i in range(1, len(samples)):
        curr, prev = samples[i], samples[i - 1]
        if curr.heading_change > config.heading_change_threshold and curr.distance < config.close_dist:
            failed_passes += 1
        if prev.victim_speed > config.intent_speed_min and curr.victim_speed < prev.victim_speed * 0.7:
            failed_passes += 1
        # Blocker stepped out and straight back in
        if (
            last_blocker_speed < config.stuck_speed_max
            and curr.blocker_speed > config.running_speed_min * 0.5
            and i < len(samples) - 1
            and samples[i + 1].blocker_speed < config.stuck_speed_max
        ):
            reblocks += 1
        last_blocker_speed = curr.blocker_speed

    return {
        "avg_distance": float(distance.mean()),
        "frontness_ratio": float((frontness > config.front_cone).mean()),
        "avg_victim_speed": float(victim_speed.mean()),
        "avg_blocker_speed": float(blocker_speed.mean()),
        "blocker_stationary_fraction": float((blocker_speed < config.stuck_speed_max).mean()),
        "failed_pass_attempts": failed_passes,
        "nearby_teammates_avg": float(np.mean([s.nearby_teammates for s in samples])),
        "rush_guard_fraction": float(np.mean([s.is_stack_running for s in samples])),
        "reblock_count": reblocks,
    }


def score_episode(duration: float, summary: dict[str, float], config: BodyBlockConfig) -> float:
    w = config.weights
    progress = max(0.0, 1.0 - summary["avg_victim_speed"] / config.min_progress_per_sec)
    score = (
        w.duration * min(1.0, duration / 5.0)
        + w.progress * progress
        + w.blocker_stationary * summary["blocker_stationary_fraction"]
        + w.failed_passes * min(1.0, summary["failed_pass_attempts"] / 5.0)
        + w.reblock * min(1.0, summary["reblock_count"] / 3.0)
        - w.rush_guard * summary["rush_guard_fraction"]
        - w.crowdedness * min(1.0, summary["nearby_teammates_avg"] / config.crowded_count_threshold)
    )
    return clamp(score)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def build_reason(victim_name: str, duration: float, summary: dict[str, float]) -> str:
    parts = [f"Blocked {victim_name} for {duration:.1f}s"]
    if summary["failed_pass_attempts"] > 0:
        parts.append(_plural(summary["failed_pass_attempts"], "pass attempt"))
    if summary["blocker_stationary_fraction"] > 0.7:
        parts.append(f"blocker stationary {round(summary['blocker_stationary_fraction'] * 100)}%")
    if summary["reblock_count"] > 0:
        parts.append(_plural(summary["reblock_count"], "re-block"))
    return ", ".join(parts)


# ============================================================================
# Detector
# ============================================================================


class BodyBlockDetector:
    def __init__(self, timeline: Timeline, config: BodyBlockConfig | None = None):
        self.timeline = timeline
        self.config = config or BodyBlockConfig()

    @timed
    def detect(self) -> list[BodyBlockRoundResult]:
        results = [self.analyze_round(rnd) for rnd in self.timeline.rounds]
        total = sum(len(r.events) for r in results)
        logger.info(f"Found {total} body-block events in {sum(r.flagged for r in results)} flagged rounds")
        return results

    def analyze_round(self, rnd: Round) -> BodyBlockRoundResult:
        config = self.config
        if rnd.freeze_end_tick is None or rnd.end_tick is None:
            return BodyBlockRoundResult(round=rnd.number)

        frames = self.timeline.frames_between(rnd.freeze_end_tick, rnd.end_tick)
        sampled = sample_frames(frames, self.timeline.tick_rate, config.sampling_hz)
        if not sampled:
            return BodyBlockRoundResult(round=rnd.number)

        freeze_end_time = frames[0].time
        window_ticks = math.ceil(config.history_window_seconds * self.timeline.tick_rate)
        tracks: dict[int, _Track] = {}
        pairs = _PairTracker(config)

        for frame in sampled:
            teams: dict[Team, list[_Track]] = {}
            for player in frame.players:
                if player.team == Team.SPECTATOR or not player.is_alive:
                    continue
                track = tracks.setdefault(player.id, _Track(player.id, player.name))
                track.push(frame.tick, frame.time, player.position, window_ticks)
                teams.setdefault(player.team, []).append(track)

            since_freeze = frame.time - freeze_end_time
            for members in teams.values():
                for victim in members:
                    for blocker in members:
                        if victim is blocker:
                            continue
                        others = [t for t in members if t is not victim and t is not blocker]
                        features = extract_features(victim, blocker, others, since_freeze, config)
                        pairs.observe((victim.player_id, blocker.player_id), frame.tick, frame.time, features)

        names = {pid: track.name for pid, track in tracks.items()}
        events = self._to_events(rnd.number, pairs.finish(), names)

        block_score = float(np.mean([e.confidence for e in events])) if events else 0.0
        block_score = min(1.0, block_score)
        return BodyBlockRoundResult(
            round=rnd.number,
            events=events,
            block_score_round=block_score,
            flagged=block_score > config.round_flag_threshold,
            confidence=block_score,
        )

    def _to_events(self, round_number: int, episodes: list[_Episode], names: dict[int, str]) -> list[BlockEvent]:
        events = []
        seen_pairs: set[tuple[int, int]] = set()
        for episode in episodes:
            summary = summarize_episode(episode, self.config)
            confidence = score_episode(episode.duration, summary, self.config)
            pair = (episode.victim_id, episode.blocker_id)
            if pair in seen_pairs:
                confidence = clamp(confidence * self.config.repeat_multiplier)
            seen_pairs.add(pair)

            victim_name = names.get(episode.victim_id, "Unknown")
            events.append(
                BlockEvent(
                    round=round_number,
                    start_tick=episode.start_tick,
                    end_tick=episode.end_tick,
                    start_time=episode.start_time,
                    end_time=episode.end_time,
                    duration=episode.duration,
                    blocker_id=episode.blocker_id,
                    blocker_name=names.get(episode.blocker_id, "Unknown"),
                    victim_id=episode.victim_id,
                    victim_name=victim_name,
                    location_hint="near spawn" if summary["avg_distance"] < 500 else "mid-map",
                    confidence=confidence,
                    features_summary=summary,
                    reason=build_reason(victim_name, episode.duration, summary),
                )
            )
        return events


def detect_body_blocking(timeline: Timeline, config: BodyBlockConfig | None = None) -> list[BodyBlockRoundResult]:
    """Convenience function to run body-block detection on every round."""
    return BodyBlockDetector(timeline, config).detect()
