"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
This is the single source of truth for all platform configuration.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    For nested settings, use double underscore: DONATIONS__MAX_RETRIES=5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("charity-platform", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # Server
    host: str = Field("0.0.0.0", description="Server host")
    port: int = Field(8000, description="Server port")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str | None = Field(None, description="Full SQLAlchemy database URL")
        host: str = Field("localhost", description="Database host")
        port: int = Field(5432, description="Database port")
        database: str = Field("charity", description="Database name")
        username: str = Field("charity", description="Database username")
        password: str = Field("", description="Database password")

        # Connection pool
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_timeout: int = Field(30, description="Pool timeout in seconds")
        pool_recycle: int = Field(3600, description="Recycle connections after seconds")
        pool_pre_ping: bool = Field(True, description="Test connections before use")

        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_always_eager: bool = Field(False, description="Run tasks inline (tests/dev)")
        task_soft_time_limit: int = Field(240, description="Soft time limit")
        task_time_limit: int = Field(300, description="Hard time limit")

        # Beat cadence for the recurring donation jobs
        process_due_interval_seconds: int = Field(
            86400, description="How often the due-payment tick runs"
        )
        reconcile_interval_seconds: int = Field(
            900, description="How often stuck payments are reconciled"
        )
        reminder_interval_seconds: int = Field(
            86400, description="How often upcoming payment reminders are sent"
        )

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Logging configuration."""

        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or text)")
        enable_correlation_ids: bool = Field(True, description="Add thread name to log entries")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Recurring Donations
    # ============================================================

    class DonationSettings(BaseModel):
        """Recurring donation engine configuration."""

        default_currency: str = Field("TRY", description="Default donation currency")
        max_retries: int = Field(3, ge=1, description="Failed attempts before a plan fails")
        retry_delay_days: int = Field(3, ge=0, description="Days between retry attempts")
        change_approval_threshold: Decimal = Field(
            Decimal("10000"), description="Amount above which a change needs approval"
        )
        processing_timeout_minutes: int = Field(
            30, ge=1, description="Minutes before a processing payment counts as stuck"
        )
        batch_size: int = Field(500, ge=1, description="Max payments per processing tick")
        resume_anchor: str = Field(
            "resume_date", description="Resume cycle anchor (resume_date or original_cycle)"
        )

        # Payment provider
        payment_provider: str = Field("mock", description="Payment provider (mock or http)")
        provider_base_url: str = Field(
            "https://payments.example.org", description="Payment provider API base URL"
        )
        provider_api_key: str = Field("", description="Payment provider API key")
        provider_timeout_seconds: float = Field(15.0, description="Charge request timeout")

        # Notifications
        notification_webhook_url: str | None = Field(
            None, description="Endpoint receiving donor notification requests"
        )
        notification_timeout_seconds: float = Field(10.0, description="Notification timeout")

    donations: DonationSettings = DonationSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: Any) -> Any:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
