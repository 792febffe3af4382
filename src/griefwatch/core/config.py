"""
Configuration Management for Griefwatch

Every detector takes an explicit options dataclass; the defaults below are the
tuned starting values. Configuration can be loaded from:
- Default values
- Configuration files (YAML, TOML, JSON)
- Environment variables

Configuration precedence (highest to lowest):
1. Explicit arguments (CLI flags)
2. A configuration file passed explicitly (--config)
3. Environment variables (GRIEFWATCH_*)
4. A configuration file found in the default search paths
5. Default values

The thresholds of the experimental detectors are hand-tuned and should be
recalibrated against labelled matches before being relied on.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# ============================================================================
# Core detectors
# ============================================================================


@dataclass
class AFKConfig:
    """AFK at round start."""

    # Grace window after freeze end; moving inside it clears the round
    grace_period_seconds: float = 5.0
    # Minimum AFK interval to report
    afk_threshold_seconds: float = 5.0
    # 2D distance between consecutive samples that counts as movement (ignores jitter)
    movement_threshold: float = 3.0


@dataclass
class FriendlyFireConfig:
    """Team kills and team damage."""

    # Events this close to the end of the demo are server-shutdown artifacts
    end_of_demo_exclusion_seconds: float = 10.0
    # Damage grouping: same attacker/victim within this many seconds OR ticks
    group_time_window_seconds: float = 5.0
    group_tick_window: int = 64
    # A victim at full HP this long after round start is a round-reset artifact
    full_hp_reset_grace_seconds: float = 5.0
    max_hp: int = 100


@dataclass
class TeamFlashConfig:
    """Team flashes from player_blind events."""

    min_flash_duration: float = 1.0
    # Look back this many ticks for a frame that knows both players' teams
    team_lookup_window_ticks: int = 64
    # Duplicate reports of one flash arrive within this window
    dedup_window_seconds: float = 1.0


@dataclass
class DisconnectConfig:
    """Disconnects and reconnects."""

    # Frame-presence fallback: absent this long counts as a disconnect
    gap_threshold_seconds: float = 2.0
    # Reconnects this soon after round start count as playing the round
    freeze_time_fallback_seconds: float = 20.0
    # Last-round disconnects shorter than this are end-of-match blips
    last_round_min_duration_seconds: float = 10.0


# ============================================================================
# Experimental detectors
# ============================================================================


@dataclass
class BodyBlockWeights:
    duration: float = 0.25
    progress: float = 0.25
    blocker_stationary: float = 0.20
    failed_passes: float = 0.15
    reblock: float = 0.10
    # Penalties
    rush_guard: float = 0.15
    crowdedness: float = 0.10


@dataclass
class BodyBlockConfig:
    """Body blocking (movement griefing)."""

    sampling_hz: float = 10.0
    # Distance in units (~1.5m)
    close_dist: float = 50.0
    # Min dot product for the blocker to be "in front" (~45 degree cone)
    front_cone: float = 0.7
    stuck_speed_max: float = 80.0
    intent_speed_min: float = 50.0
    running_speed_min: float = 150.0
    # Relative forward speed that counts as pushing / being out-paced
    relative_speed_intent: float = 20.0
    min_progress_per_sec: float = 30.0
    spawn_ignore_seconds: float = 10.0
    min_event_duration: float = 1.2
    allow_gap_seconds: float = 0.5
    crowded_radius: float = 150.0
    crowded_count_threshold: int = 3
    accel_spike_threshold: float = 200.0
    heading_change_threshold: float = 30.0
    stack_heading_tolerance: float = 45.0
    history_window_seconds: float = 5.0
    weights: BodyBlockWeights = field(default_factory=BodyBlockWeights)
    repeat_multiplier: float = 1.3
    round_flag_threshold: float = 0.5


@dataclass
class InactivityWeights:
    displacement: float = 0.3
    aim_movement: float = 0.3
    actions: float = 0.2
    duration: float = 0.2


@dataclass
class InactivityConfig:
    """Mid-round inactivity."""

    sampling_hz: float = 10.0
    # Displacement in the short window
    max_displacement_hold: float = 50.0
    min_displacement_active: float = 100.0
    # Aim movement in degrees over the short window
    min_aim_active: float = 15.0
    min_aim_active_hold: float = 5.0
    afk_time_to_flag: float = 15.0
    afk_time_high_confidence: float = 25.0
    window_short_seconds: float = 5.0
    window_long_seconds: float = 10.0
    weights: InactivityWeights = field(default_factory=InactivityWeights)
    scoped_reduction: float = 0.5
    saving_time_threshold: float = 30.0
    saving_reduction: float = 0.6
    flashed_threshold: float = 0.8
    flashed_reduction: float = 0.4
    actions_normalizer: int = 5
    flag_confidence: float = 0.5


@dataclass
class ObjectiveWeights:
    bomb_carrier_stall: float = 0.15
    no_plant_opportunity: float = 0.20
    bad_bomb_drop: float = 0.25
    defuse_refusal: float = 0.25
    defuse_abort: float = 0.15


@dataclass
class ObjectiveConfig:
    """Objective sabotage (bomb griefing)."""

    sampling_hz: float = 10.0
    near_teammate_radius: float = 200.0
    defuse_radius: float = 150.0
    site_cluster_radius: float = 300.0
    cluster_drift_max: float = 100.0
    plant_buffer_seconds: float = 6.0
    defuse_buffer_seconds: float = 2.0
    defuse_with_kit_seconds: float = 5.0
    defuse_without_kit_seconds: float = 10.0
    bomb_timer_seconds: float = 40.0
    pressure_window_seconds: float = 5.0
    pressure_damage_threshold: float = 20.0
    pressure_death_window_seconds: float = 3.0
    pressure_fire_count: int = 5
    stall_min_seconds: float = 8.0
    opportunity_min_seconds: float = 6.0
    site_cluster_min_teammates: int = 2
    defuse_opportunity_min_seconds: float = 2.0
    movement_window_seconds: float = 3.0
    low_speed_threshold: float = 80.0
    drop_pickup_window_seconds: float = 5.0
    abort_max_seconds: float = 1.5
    reattempt_window_seconds: float = 3.0
    hopeless_teammate_ratio: float = 4.0
    hopeless_time_pre_plant: float = 15.0
    hopeless_time_post_plant: float = 8.0
    # Suppression cut-offs
    max_pressure: float = 0.5
    max_hopeless: float = 0.7
    max_hopeless_defuse: float = 0.8
    weights: ObjectiveWeights = field(default_factory=ObjectiveWeights)
    repeat_pattern_multiplier: float = 1.4


@dataclass
class EconomyWeights:
    underbuy: float = 0.4
    overbuy: float = 0.3
    kitless_ct: float = 0.2
    high_value_early_death: float = 0.35


@dataclass
class EconomyConfig:
    """Economy griefing inferred from inventory events."""

    eco_median_threshold: float = 1400.0
    full_median_threshold: float = 3800.0
    underbuy_ratio: float = 0.5
    absolute_underbuy_value: float = 1500.0
    overbuy_ratio: float = 2.0
    absolute_overbuy_value: float = 4500.0
    high_value_threshold: float = 5000.0
    early_death_seconds: float = 18.0
    low_damage_threshold: float = 25.0
    transfer_window_seconds: float = 2.0
    buy_window_fallback_seconds: float = 20.0
    weights: EconomyWeights = field(default_factory=EconomyWeights)
    pattern_multiplier_base: float = 1.0
    pattern_multiplier_increment: float = 0.25
    pattern_multiplier_max: float = 3.0
    strong_event_flag_count: int = 2
    medium_event_flag_count: int = 4
    match_confidence_flag: float = 0.7


# ============================================================================
# Ambient
# ============================================================================


@dataclass
class ProgressConfig:
    """Progress notification throttling."""

    throttle_ms: float = 100.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: str | None = None


@dataclass
class GriefwatchConfig:
    """Main configuration container."""

    afk: AFKConfig = field(default_factory=AFKConfig)
    friendly_fire: FriendlyFireConfig = field(default_factory=FriendlyFireConfig)
    team_flash: TeamFlashConfig = field(default_factory=TeamFlashConfig)
    disconnect: DisconnectConfig = field(default_factory=DisconnectConfig)
    body_blocking: BodyBlockConfig = field(default_factory=BodyBlockConfig)
    inactivity: InactivityConfig = field(default_factory=InactivityConfig)
    objective: ObjectiveConfig = field(default_factory=ObjectiveConfig)
    economy: EconomyConfig = field(default_factory=EconomyConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Experimental detectors are beta and off by default
    enable_experimental: bool = False

    config_version: str = "1.0"


# ============================================================================
# Configuration Loading
# ============================================================================


def get_default_config_paths() -> list[Path]:
    """Get the default paths to search for configuration files."""
    paths = []

    paths.append(Path.cwd() / "griefwatch.yaml")
    paths.append(Path.cwd() / "griefwatch.toml")
    paths.append(Path.cwd() / "griefwatch.json")
    paths.append(Path.cwd() / ".griefwatch.yaml")

    home = Path.home()
    xdg_config = os.environ.get("XDG_CONFIG_HOME", str(home / ".config"))
    paths.append(Path(xdg_config) / "griefwatch" / "config.yaml")
    paths.append(Path(xdg_config) / "griefwatch" / "config.toml")
    paths.append(home / ".griefwatch.yaml")

    return paths


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from a YAML file."""
    import yaml

    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from a TOML file."""
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from a JSON file."""
    with open(path) as f:
        return json.load(f)


def load_config_file(path: Path) -> dict[str, Any]:
    """Load configuration from a file, detecting format from extension."""
    if not path.exists():
        return {}

    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return load_yaml_config(path)
    elif suffix == ".toml":
        return load_toml_config(path)
    elif suffix == ".json":
        return load_json_config(path)
    else:
        logger.warning(f"Unknown config file format: {suffix}")
        return {}


def _coerce_env_value(value: str) -> Any:
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value.isdigit():
        return int(value)
    try:
        return float(value)
    except ValueError:
        return value


def load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}

    env_mappings = {
        "GRIEFWATCH_LOG_LEVEL": ("logging", "level"),
        "GRIEFWATCH_LOG_FILE": ("logging", "file"),
        "GRIEFWATCH_EXPERIMENTAL": (None, "enable_experimental"),
        "GRIEFWATCH_AFK_GRACE_SECONDS": ("afk", "grace_period_seconds"),
        "GRIEFWATCH_AFK_MOVEMENT_THRESHOLD": ("afk", "movement_threshold"),
        "GRIEFWATCH_MIN_FLASH_DURATION": ("team_flash", "min_flash_duration"),
        "GRIEFWATCH_DISCONNECT_GAP_SECONDS": ("disconnect", "gap_threshold_seconds"),
        "GRIEFWATCH_PROGRESS_THROTTLE_MS": ("progress", "throttle_ms"),
    }

    for env_var, (section, key) in env_mappings.items():
        value = os.environ.get(env_var)
        if value is None:
            continue
        coerced = _coerce_env_value(value)
        if section is None:
            config[key] = coerced
        else:
            config.setdefault(section, {})[key] = coerced

    return config


def merge_configs(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two configuration dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def _apply_section(target: Any, data: dict[str, Any]) -> None:
    """Copy known keys from data onto a config dataclass, recursing into nested sections."""
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            logger.debug(f"Ignoring unknown config key: {key}")
            continue
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, dict):
            _apply_section(current, value)
        else:
            setattr(target, key, value)


def dict_to_config(data: dict[str, Any]) -> GriefwatchConfig:
    """Convert a dictionary to GriefwatchConfig."""
    config = GriefwatchConfig()
    _apply_section(config, data)
    return config


def load_config(config_file: Path | None = None, include_env: bool = True) -> GriefwatchConfig:
    """
    Load configuration from all sources.

    Args:
        config_file: Explicit path to a config file (optional)
        include_env: Whether to include environment variables

    Returns:
        Merged GriefwatchConfig
    """
    file_data: dict[str, Any] = {}

    if config_file:
        file_data = load_config_file(config_file)
        logger.info(f"Loaded config from: {config_file}")
    else:
        for path in get_default_config_paths():
            if path.exists():
                file_data = load_config_file(path)
                logger.info(f"Loaded config from: {path}")
                break

    env_data = load_env_config() if include_env else {}
    # An explicit file beats the environment; a discovered one does not
    if config_file:
        config_data = merge_configs(env_data, file_data)
    else:
        config_data = merge_configs(file_data, env_data)

    return dict_to_config(config_data)


# ============================================================================
# Configuration Saving
# ============================================================================


def config_to_dict(config: GriefwatchConfig) -> dict[str, Any]:
    """Convert GriefwatchConfig to a dictionary."""
    return asdict(config)


def save_config(config: GriefwatchConfig, path: Path) -> None:
    """
    Save configuration to a file.

    Args:
        config: Configuration to save
        path: Path to save to (format detected from extension)
    """
    data = config_to_dict(config)
    suffix = path.suffix.lower()

    if suffix in (".yaml", ".yml"):
        import yaml

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    elif suffix == ".json":
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
    else:
        raise ValueError(f"Unsupported config format for saving: {suffix}")

    logger.info(f"Saved config to: {path}")


def generate_default_config(path: Path) -> None:
    """Generate a default configuration file."""
    save_config(GriefwatchConfig(), path)
    logger.info(f"Generated default config at: {path}")
