"""Shared fixtures for the Griefwatch test suite."""

import pytest

from factories import TICK_RATE, player, still_frames, timeline
from griefwatch.core.config import GriefwatchConfig
from griefwatch.core.constants import Team
from griefwatch.core.timeline import Round


@pytest.fixture
def config():
    """Default configuration with experimental detectors off."""
    return GriefwatchConfig()


@pytest.fixture
def stationary_round():
    """One round (freeze end 640, end 8000) with a single CT who never moves."""
    frames = still_frames(0, 8000, TICK_RATE, [player(1, "Idle", Team.CT, x=100, y=200)])
    return timeline(frames, [Round(number=1, start_tick=0, freeze_end_tick=640, end_tick=8000)])
