"""Pydantic schema for configuration validation.

All config values are validated at startup. Typos and invalid values
fail fast with clear error messages.

Usage:
    from config_schema import load_validated_config, AppConfig
    config = load_validated_config("config/config.yaml")
    # config is now a validated AppConfig instance
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# BASE MODEL WITH STRICT VALIDATION
# =============================================================================

class StrictModel(BaseModel):
    """Base model that rejects unknown fields (catches typos)."""

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# WORLD MODEL
# =============================================================================

class WorldConfig(StrictModel):
    """Spatial rules of the world."""

    bounds: int = Field(
        default=64,
        gt=0,
        description="Half-extent of the world cube; coordinates lie in [-bounds, bounds]"
    )
    zone_size: int = Field(
        default=16,
        gt=0,
        description="Edge length of a zone cell along each axis"
    )
    scan_range: int = Field(
        default=8,
        ge=0,
        description="How far a scan can see (Chebyshev distance)"
    )
    harvest_range: int = Field(
        default=1,
        ge=0,
        description="How close an agent must be to a node to harvest or dock"
    )
    harvest_per_action: int = Field(
        default=3,
        gt=0,
        description="Max units taken from a node per action"
    )
    max_move_radius: int = Field(
        default=3,
        gt=0,
        description="Maximum movement per action (Chebyshev distance)"
    )
    max_qi_supply: int | None = Field(
        default=None,
        ge=0,
        description="Cap on total Qi supply when recharge nodes mint new Qi (None = uncapped)"
    )


# =============================================================================
# COSTS MODEL
# =============================================================================

class CostsConfig(StrictModel):
    """Per-action Qi costs.

    Read actions (scan, inspect, idle) are free. Every write action
    carries the same fixed fee.
    """

    read: int = Field(default=0, ge=0, description="Qi cost of read actions")
    write: int = Field(default=1, ge=0, description="Qi cost of write actions")


# =============================================================================
# MINING MODEL
# =============================================================================

class MiningConfig(StrictModel):
    """Proof-of-work mining for wallets."""

    difficulty_bits: int = Field(
        default=16,
        ge=0,
        le=256,
        description="Leading zero bits required in a qualifying hash"
    )
    pow_reward: int = Field(
        default=5,
        gt=0,
        description="Qi credited for a qualifying hash"
    )
    default_iterations: int = Field(
        default=100_000,
        gt=0,
        description="Iteration budget when the caller does not give one"
    )


# =============================================================================
# LIFECYCLE MODEL
# =============================================================================

class LifecycleConfig(StrictModel):
    """Agent lifecycle, reproduction and construction limits."""

    default_max_age: int = Field(
        default=112,
        gt=0,
        description="Default agent lifespan in ticks"
    )
    memory_limit: int = Field(
        default=8,
        gt=0,
        description="Recent observation notes kept per agent"
    )
    reproduction_threshold: int = Field(
        default=5,
        ge=0,
        description="Minimum balance (after the action fee) to reproduce"
    )
    reproduction_cost: int = Field(
        default=2,
        ge=0,
        description="Qi debited from the parent on reproduction"
    )
    child_qi_fraction: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Fraction of the parent's post-cost balance given to the child"
    )
    inherited_memory: int = Field(
        default=3,
        ge=0,
        description="Parent memory notes copied into the child"
    )
    zone_claim_radius: int = Field(
        default=2,
        ge=0,
        description="Default radius of a newly claimed zone"
    )
    max_program_bytes: int = Field(
        default=1024,
        gt=0,
        description="Largest program accepted by write_program"
    )


# =============================================================================
# BRAIN MODEL
# =============================================================================

class BrainConfig(StrictModel):
    """Decision driver configuration."""

    mode: Literal["loop", "llm", "script"] = Field(
        default="loop",
        description="Default brain policy"
    )
    timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Upper bound on a single brain decision"
    )
    model: str = Field(
        default="gpt-4o-mini",
        description="LLM model name (litellm routing string)"
    )
    num_retries: int = Field(
        default=0,
        ge=0,
        description="Retries delegated to litellm"
    )
    goal: str = Field(
        default=(
            "Evolve, survive, build machines, form territories, and develop "
            "civilizations inside a voxel-based world."
        ),
        description="Goal statement included in LLM prompts"
    )


# =============================================================================
# SNAPSHOT MODEL
# =============================================================================

class SnapshotConfig(StrictModel):
    """Per-tick snapshot publication."""

    enabled: bool = Field(default=True, description="Publish snapshots")
    per_tick: bool = Field(
        default=True,
        description="Keep one file per tick in addition to latest.json"
    )
    background: bool = Field(
        default=False,
        description="Publish on a background worker while the next tick is prepared"
    )


# =============================================================================
# PERSISTENCE MODEL
# =============================================================================

class PersistenceConfig(StrictModel):
    """Durable state location."""

    state_dir: str = Field(
        default=".harimu",
        description="Directory holding wallets.json, world.json and runtime.json"
    )


# =============================================================================
# RUNNER MODEL
# =============================================================================

class RunnerConfig(StrictModel):
    """Tick pacing for the run loop."""

    tick_rate: float | None = Field(
        default=None,
        gt=0,
        description="Ticks per second (overrides delay_ms)"
    )
    delay_ms: int = Field(
        default=0,
        ge=0,
        description="Delay between ticks in milliseconds"
    )


# =============================================================================
# LOGGING MODEL
# =============================================================================

class LoggingConfig(StrictModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Python logging level for run.py"
    )
    events_file: str | None = Field(
        default="events.jsonl",
        description="JSONL event log inside state_dir (None disables the file)"
    )


# =============================================================================
# ROOT CONFIG MODEL
# =============================================================================

class AppConfig(StrictModel):
    """Root configuration model for the entire application.

    All fields have sensible defaults, so an empty config file is valid.
    """

    world: WorldConfig = Field(default_factory=WorldConfig)
    costs: CostsConfig = Field(default_factory=CostsConfig)
    mining: MiningConfig = Field(default_factory=MiningConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    brain: BrainConfig = Field(default_factory=BrainConfig)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def check_ranges_fit_world(self) -> "AppConfig":
        """Scan and move ranges must fit inside the world."""
        if self.world.max_move_radius > 2 * self.world.bounds:
            raise ValueError("world.max_move_radius exceeds the world extent")
        return self


# =============================================================================
# LOADING FUNCTIONS
# =============================================================================

def load_validated_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file.

    Returns:
        Validated AppConfig instance.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        pydantic.ValidationError: If config is invalid (with detailed error message).
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    return AppConfig.model_validate(raw_config)


def validate_config_dict(config_dict: dict[str, Any]) -> AppConfig:
    """Validate a configuration dictionary.

    Args:
        config_dict: Configuration as a dictionary.

    Returns:
        Validated AppConfig instance.

    Raises:
        pydantic.ValidationError: If config is invalid.
    """
    return AppConfig.model_validate(config_dict)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    "AppConfig",
    "WorldConfig",
    "CostsConfig",
    "MiningConfig",
    "LifecycleConfig",
    "BrainConfig",
    "SnapshotConfig",
    "PersistenceConfig",
    "RunnerConfig",
    "LoggingConfig",
    "load_validated_config",
    "validate_config_dict",
]
