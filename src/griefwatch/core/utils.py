"""
Utility functions and performance helpers for Griefwatch.

This module provides:
- Performance timing decorators
- Numeric helpers shared by the scoring code
- Geometry helpers for positions and view angles
- Frame sampling for the experimental detectors
"""

import logging
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict
from enum import Enum
from functools import wraps
from typing import Any, TypeVar

from griefwatch.core.constants import MAX_SAMPLE_ROWS
from griefwatch.core.timeline import MatchFrame, Position

logger = logging.getLogger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])


def timed(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Usage:
        @timed
        def detect_afk(timeline):
            ...
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        result = func(*args, **kwargs)
        elapsed = time.perf_counter() - start_time
        logger.debug(f"{func.__name__} completed in {elapsed:.3f}s")
        return result

    return wrapper  # type: ignore


class PerformanceMonitor:
    """
    Context manager for monitoring performance of code blocks.

    Usage:
        with PerformanceMonitor("team damage detection"):
            detect_team_damage(...)
    """

    def __init__(self, operation_name: str, log_level: int = logging.INFO):
        self.operation_name = operation_name
        self.log_level = log_level
        self.start_time: float | None = None
        self.elapsed: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.perf_counter() - (self.start_time or 0)
        if exc_type is not None:
            logger.error(f"{self.operation_name} failed after {self.elapsed:.3f}s: {exc_val}")
        else:
            logger.log(self.log_level, f"{self.operation_name} completed in {self.elapsed:.3f}s")
        return False


def clamp(value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
    """Clamp a value to a range (defaults to [0, 1] for confidences)."""
    return max(min_val, min(value, max_val))


def format_duration(seconds: float) -> str:
    """
    Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "2m 30s" or "1.5s"
    """
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"


def median_upper(values: Sequence[float]) -> float:
    """Median taking the upper-middle element for even counts (``sorted[n // 2]``)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


# =============================================================================
# Geometry
# =============================================================================


def distance_2d(a: Position, b: Position) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def angle_delta(a: float, b: float) -> float:
    """Smallest absolute difference between two headings in degrees (handles 0/360 wrap)."""
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def heading_degrees(dx: float, dy: float) -> float:
    """Heading of a 2D vector in degrees, normalized to [0, 360)."""
    return math.degrees(math.atan2(dy, dx)) % 360.0


# =============================================================================
# Frame sampling
# =============================================================================


def sample_frames(
    frames: Sequence[MatchFrame],
    tick_rate: float,
    sampling_hz: float,
    max_rows: int = MAX_SAMPLE_ROWS,
) -> list[MatchFrame]:
    """
    Downsample frames to roughly ``sampling_hz``.

    Frames are sparse, so spacing is measured in ticks: a frame is kept once
    at least ceil(tick_rate / sampling_hz) ticks have passed since the last
    kept one. The last frame is always kept. The total number of player rows
    is capped at ``max_rows``.
    """
    if not frames:
        return []

    interval = math.ceil(tick_rate / sampling_hz) if sampling_hz > 0 else 0
    sampled = [frames[0]]
    for frame in frames[1:]:
        if frame.tick - sampled[-1].tick >= interval:
            sampled.append(frame)
    if sampled[-1] is not frames[-1]:
        sampled.append(frames[-1])

    rows = 0
    for index, frame in enumerate(sampled):
        rows += len(frame.players)
        if rows > max_rows:
            logger.warning(
                f"Sample row cap ({max_rows}) reached at tick {frame.tick}; truncating analysis window"
            )
            return sampled[:index]
    return sampled


# =============================================================================
# Serialization
# =============================================================================


def camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        return {camel_case(str(k)): _camelize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_camelize(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float):
        return round(value, 4)
    return value


def record_to_dict(record: Any) -> dict[str, Any]:
    """Serialize a finding dataclass with camelCase keys for the presentation layer."""
    return _camelize(asdict(record))
