"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """Cascade engine settings loaded from environment variables with CASCADE_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="CASCADE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.cadenza/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Cascade execution
    default_batch_size: int = Field(default=50, ge=1)
    max_batch_size: int = Field(default=500, ge=1)
    operation_timeout_seconds: float = Field(default=300.0, gt=0)
    registry_sweep_interval_seconds: float = 30.0

    # Impact preview
    preview_sample_size: int = Field(default=20, ge=0)
    confirmation_threshold: int = 25
    high_risk_threshold: int = 100
    critical_risk_threshold: int = 500
    seconds_per_batch_estimate: float = 0.5

    # Snapshots and rollback
    snapshot_retention_days: int = Field(default=30, ge=1)
    rollback_cooldown_seconds: float = Field(default=300.0, ge=0)

    # Orphan classification
    orphan_medium_threshold: int = 10
    orphan_high_threshold: int = 100

    # Call-site retry for transient failures
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Telemetry
    structured_logging: bool = False

    @model_validator(mode="after")
    def _check_thresholds(self) -> EngineSettings:
        if self.default_batch_size > self.max_batch_size:
            raise ValueError("default_batch_size must not exceed max_batch_size")
        if self.orphan_medium_threshold > self.orphan_high_threshold:
            raise ValueError("orphan_medium_threshold must not exceed orphan_high_threshold")
        return self


def load_settings(**overrides: object) -> EngineSettings:
    """Load settings from environment, with optional overrides for testing."""
    settings = EngineSettings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded engine settings (database=%s)", settings.database_url[:40])

    return settings
