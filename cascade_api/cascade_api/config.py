"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application and security-layer settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_PORT=8080``) or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    structured_logging: bool = False

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    # Timezone used for time-of-day permission and anomaly rules.
    timezone: str = "UTC"

    # Rate limiting: sliding window keyed by (operation, actor, origin).
    rate_limit_enabled: bool = True
    rate_limit_window_seconds: float = 60.0
    rate_limit_budget: int = 10
    rate_limit_bulk_budget: int = 2
    rate_limit_sweep_interval_seconds: float = 60.0

    # Permission predicates.
    enforce_business_hours: bool = True
    business_hours_start: int = 9
    business_hours_end: int = 17
    reauth_window_seconds: float = 300.0

    # Anomaly heuristics.
    anomaly_burst_per_minute: int = 10
    anomaly_max_entity_count: int = 100
    anomaly_safe_hours_start: int = 6
    anomaly_safe_hours_end: int = 22
    anomaly_max_failures: int = 3
    anomaly_failure_window_seconds: float = 3600.0
    anomaly_user_agent_patterns: list[str] = ["curl", "wget", "python", "bot"]
    anomaly_escalation_threshold: int = 3
    anomaly_escalation_window_seconds: float = 300.0
    anomaly_block_seconds: float = 3600.0

    # Violation log and alerting.
    violation_retention_seconds: float = 3600.0
    alert_webhook_url: str | None = None
    alert_webhook_timeout: float = 5.0

    # Upper bound on entries written by one audit export.
    audit_export_max_records: int = 100_000

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when cors_allow_credentials=True."
            )
        for start, end, label in (
            (self.business_hours_start, self.business_hours_end, "business_hours"),
            (self.anomaly_safe_hours_start, self.anomaly_safe_hours_end, "anomaly_safe_hours"),
        ):
            if not (0 <= start < end <= 24):
                raise ValueError(f"{label} must satisfy 0 <= start < end <= 24")
        return self


def load_api_settings(**overrides: object) -> APISettings:
    """Load settings from environment, with optional overrides for testing."""
    return APISettings(**overrides)  # type: ignore[arg-type]
