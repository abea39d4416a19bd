"""Pydantic settings for application configuration."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings.

    Supports PostgreSQL (postgresql+asyncpg://) for production and SQLite
    (sqlite+aiosqlite://) for local development and tests.
    """

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    url: str = Field(
        default="sqlite+aiosqlite:///./genguard.db",
        description="Database connection URL",
    )
    pool_size: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Connection pool size",
    )
    max_overflow: int = Field(
        default=10,
        ge=0,
        le=100,
        description="Max connections beyond pool size",
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements",
    )


class StoreSettings(BaseSettings):
    """Timeout and retry policy applied to every store transaction."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for a single transaction attempt",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts before a transient failure is surfaced",
    )
    retry_min_wait_seconds: float = Field(default=0.05, ge=0)
    retry_max_wait_seconds: float = Field(default=1.0, ge=0)


class QuotaSettings(BaseSettings):
    """Per-scope daily admission quotas."""

    model_config = SettingsConfigDict(env_prefix="QUOTA_")

    network_daily_limit: int = Field(
        default=3,
        ge=0,
        description="Admissions per network address per UTC day",
    )
    identity_daily_limit: int = Field(
        default=3,
        ge=0,
        description="Admissions per identity (account/email) per UTC day",
    )
    missing_scope_policy: Literal["skip", "reject"] = Field(
        default="skip",
        description="What to do when an identifying scope key is unavailable",
    )


class SpendSettings(BaseSettings):
    """Ceilings on metered spend against the external AI provider."""

    model_config = SettingsConfigDict(env_prefix="SPEND_")

    hourly_limit_usd: Decimal = Field(
        default=Decimal("10"),
        ge=0,
        description="Max spend per UTC hour",
    )
    daily_limit_usd: Decimal = Field(
        default=Decimal("50"),
        ge=0,
        description="Max spend per UTC day",
    )


class FlagSettings(BaseSettings):
    """Feature switch resolution chain settings."""

    model_config = SettingsConfigDict(env_prefix="FLAGS_")

    remote_url: str = Field(
        default="",
        description="Base URL of the remote config service; empty disables the remote step",
    )
    remote_token: str = Field(
        default="",
        description="Bearer token for the remote config service",
    )
    remote_timeout_seconds: float = Field(default=1.5, gt=0)
    store_timeout_seconds: float = Field(default=1.0, gt=0)
    cache_ttl_seconds: float = Field(
        default=60.0,
        ge=0,
        description="How long a resolved flag is served from the process cache",
    )
    defaults: dict[str, bool] = Field(
        default_factory=lambda: {"ENABLE_AI_GENERATION": True},
        description="Compiled-in defaults used when no other source answers",
    )


class JobSettings(BaseSettings):
    """Job ledger policy."""

    model_config = SettingsConfigDict(env_prefix="JOBS_")

    max_attempts: int = Field(default=3, ge=1)
    stale_after_seconds: int = Field(
        default=600,
        ge=1,
        description="Running jobs without a heartbeat for this long may be reclaimed",
    )
    heartbeat_interval_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Claim renewal period; defaults to a third of stale_after_seconds",
    )
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)


class NotifySettings(BaseSettings):
    """Fire-and-forget notification sinks."""

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    queue_maxsize: int = Field(default=1000, ge=1)
    workers: int = Field(default=1, ge=1, le=16)
    timeout_seconds: float = Field(default=5.0, gt=0)
    telemetry_enabled: bool = Field(default=True)
    webhook_base_url: str = Field(default="")
    email_api_url: str = Field(default="https://api.resend.com/emails")
    email_api_key: str = Field(default="")
    email_from: str = Field(default="")


class OrchestratorSettings(BaseSettings):
    """Admission flow settings."""

    model_config = SettingsConfigDict(env_prefix="ORCHESTRATOR_")

    generation_flag_key: str = Field(default="ENABLE_AI_GENERATION")
    operation_name: str = Field(default="generation")


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    json_format: bool = Field(
        default=True,
        description="Use JSON format for logs",
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    spend: SpendSettings = Field(default_factory=SpendSettings)
    flags: FlagSettings = Field(default_factory=FlagSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    notify: NotifySettings = Field(default_factory=NotifySettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        The application settings.
    """
    return Settings()


def refresh_settings() -> Settings:
    """Clear settings cache and return fresh settings.

    Returns:
        Fresh application settings.
    """
    get_settings.cache_clear()
    return get_settings()
