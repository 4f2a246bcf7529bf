"""Metering engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class MeteringEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


# Compute-unit weights per job type.  Jobs not listed bill at ``default``.
DEFAULT_COMPUTE_WEIGHTS: dict[str, float] = {
    # Task operations
    "task_read": 0.5,
    "task_create": 1.0,
    "task_update": 1.0,
    "task_delete": 1.0,
    "task_bulk_update": 5.0,
    # Sprint operations
    "sprint_create": 2.0,
    "sprint_complete": 3.0,
    # Files
    "attachment_upload": 2.0,
    "attachment_delete": 1.0,
    # Workspace
    "workspace_create": 3.0,
    "workspace_update": 1.0,
    # Automation
    "automation_trigger": 5.0,
    "automation_run": 3.0,
    # AI features
    "ai_summary": 10.0,
    "ai_code_review": 20.0,
    "ai_doc_generation": 15.0,
    "ai_suggestion": 5.0,
    # Background jobs
    "aggregation": 3.0,
    "sync": 5.0,
    "export": 10.0,
    "import": 15.0,
    "snapshot": 2.0,
    "alert_evaluation": 2.0,
    "revalidation": 0.5,
    "default": 1.0,
}


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with METERING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="METERING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: MeteringEnv = MeteringEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.metering/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_statement_timeout_ms: int = 30_000
    database_lock_timeout_ms: int = 10_000

    # Rates (USD per unit)
    rate_traffic_gb: Decimal = Decimal("0.10")
    rate_storage_gb_month: Decimal = Decimal("0.05")
    rate_compute_unit: Decimal = Decimal("0.001")

    # Compute weighting (JSON object in the environment)
    compute_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_COMPUTE_WEIGHTS))

    # Aggregation optimistic-concurrency retry budget
    aggregation_max_retries: int = 5

    # Alerts
    alert_cooldown_seconds: int = 3600

    # Invoice lifecycle
    allow_pay_from_draft: bool = False

    # Logging
    structured_logging: bool = False

    @field_validator("rate_traffic_gb", "rate_storage_gb_month", "rate_compute_unit")
    @classmethod
    def _non_negative_rate(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("rates must be non-negative")
        return v

    @field_validator("compute_weights")
    @classmethod
    def _ensure_default_weight(cls, v: dict[str, float]) -> dict[str, float]:
        if any(w < 0 for w in v.values()):
            raise ValueError("compute weights must be non-negative")
        if "default" not in v:
            v = {**v, "default": DEFAULT_COMPUTE_WEIGHTS["default"]}
        return v

    @field_validator("aggregation_max_retries")
    @classmethod
    def _positive_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("aggregation_max_retries must be at least 1")
        return v


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
