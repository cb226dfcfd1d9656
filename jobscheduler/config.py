"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL for the job store"
    )
    database_ssl: bool = Field(
        default=False, description="Require SSL for the database connection"
    )
    db_pool_min_size: int = Field(default=0, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")

    # Scheduler
    scheduler_enabled: bool = Field(
        default=True,
        description="Run the polling loop in this process (control-plane API works either way)",
    )
    scheduler_instance_id: Optional[str] = Field(
        default=None,
        description="Instance identity used as lock owner (defaults to hostname:pid:random)",
    )
    scheduler_poll_interval_s: float = Field(
        default=60.0, gt=0, description="Seconds between due-job checks"
    )
    scheduler_batch_size: int = Field(
        default=10, ge=1, description="Maximum due jobs dispatched per poll tick"
    )
    scheduler_lock_lease_ms: int = Field(
        default=300_000,
        gt=0,
        description="Job lock lease in milliseconds. Must comfortably exceed the poll interval.",
    )
    scheduler_default_timeout_ms: int = Field(
        default=300_000,
        gt=0,
        description="Handler timeout when a job's config has no timeoutMs",
    )
    scheduler_default_timezone: str = Field(
        default="America/New_York", description="Timezone for jobs registered without one"
    )
    scheduler_default_max_retries: int = Field(
        default=3, ge=0, description="Retries after a failed run"
    )
    scheduler_default_retry_delay_ms: int = Field(
        default=60_000, ge=0, description="Fixed delay before each retry"
    )
    scheduler_execution_retention_days: int = Field(
        default=30, ge=1, description="Execution history retention for the cleanup job"
    )
    scheduler_register_system_jobs: bool = Field(
        default=True,
        description="Register built-in maintenance jobs (execution cleanup, lock sweep) at startup",
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)"
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
