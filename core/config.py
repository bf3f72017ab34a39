"""Scheduler configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from SCHEDULER_* environment variables or a .env file."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///scheduler.db"

    # Worker
    SCAN_INTERVAL_SECONDS: float = 30.0
    MAX_CONCURRENT_RUNS: int = 10
    DISPATCH_QUEUE_SIZE: int = 1000

    # Retention
    RUN_RETENTION_DAYS: int = 30
    RETENTION_SWEEP_SECONDS: float = 86400.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        env_file=".env",
        extra="ignore",
        case_sensitive=True,
    )


def get_settings() -> Settings:
    return Settings()
