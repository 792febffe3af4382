"""
Griefwatch Core - Foundation modules shared by every detector.

This module contains:
- constants: Teams, tick rate, event types and the price table
- config: Detector options and configuration file loading
- timeline: The Timeline data model and raw event accessors
- utils: Timing, geometry, sampling and serialization helpers
"""

from griefwatch.core.constants import CS2_TICK_RATE, Team
from griefwatch.core.timeline import (
    GameEvent,
    MatchFrame,
    PlayerState,
    Position,
    RawEvent,
    Round,
    Timeline,
    TimelineError,
    load_timeline,
)

__all__ = [
    # Constants
    "CS2_TICK_RATE",
    "Team",
    # Timeline
    "GameEvent",
    "MatchFrame",
    "PlayerState",
    "Position",
    "RawEvent",
    "Round",
    "Timeline",
    "TimelineError",
    "load_timeline",
]
