"""
Engine Configuration - Tunables for the reconciliation engine.

All values can be overridden through SIGHTLINE_* environment variables:

    SIGHTLINE_ENV                  development | production
    SIGHTLINE_LOG_LEVEL            debug | info | warning | error
    SIGHTLINE_GRID_SIZE            scene grid size in pixels
    SIGHTLINE_MOVEMENT_THRESHOLD   fraction of a grid cell below which moves are noise
    SIGHTLINE_SETTLE_DELAY         seconds to wait before a pass touching a stealth token
    SIGHTLINE_VALIDATION_DEBOUNCE  seconds to collapse move events before validation
    SIGHTLINE_STORAGE_DIR          directory for persisted overrides (unset = memory)
"""

from __future__ import annotations
from dataclasses import dataclass
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class EngineConfig:
    """
    Runtime configuration for one engine instance (one per scene).
    """
    env: str = "development"
    log_level: str = "info"

    # Scene geometry
    grid_size: float = 100.0
    movement_threshold: float = 0.5

    # Scheduling
    settle_delay: float = 0.025
    validation_debounce: float = 0.5

    # Triggers
    enabled: bool = True
    update_on_movement: bool = True
    update_on_lighting: bool = True

    # Overrides
    respect_overrides: bool = True
    block_critical_conflicts: bool = True

    # Persistence
    storage_dir: str | None = None

    @property
    def min_movement(self) -> float:
        """Distance in pixels a token must move to count as a move."""
        return self.grid_size * self.movement_threshold

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a config from SIGHTLINE_* environment variables."""
        return cls(
            env=os.getenv("SIGHTLINE_ENV", "development"),
            log_level=os.getenv("SIGHTLINE_LOG_LEVEL", "info"),
            grid_size=_env_float("SIGHTLINE_GRID_SIZE", 100.0),
            movement_threshold=_env_float("SIGHTLINE_MOVEMENT_THRESHOLD", 0.5),
            settle_delay=_env_float("SIGHTLINE_SETTLE_DELAY", 0.025),
            validation_debounce=_env_float("SIGHTLINE_VALIDATION_DEBOUNCE", 0.5),
            enabled=_env_bool("SIGHTLINE_ENABLED", True),
            update_on_movement=_env_bool("SIGHTLINE_UPDATE_ON_MOVEMENT", True),
            update_on_lighting=_env_bool("SIGHTLINE_UPDATE_ON_LIGHTING", True),
            respect_overrides=_env_bool("SIGHTLINE_RESPECT_OVERRIDES", True),
            block_critical_conflicts=_env_bool("SIGHTLINE_BLOCK_CRITICAL", True),
            storage_dir=os.getenv("SIGHTLINE_STORAGE_DIR") or None,
        )
