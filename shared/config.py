"""
Environment-driven settings for the notification pipeline.

All values can be overridden with NOTIFY_* environment variables or a .env file,
e.g. NOTIFY_PROCESS_INTERVAL_MS=1000. Components accept their parameters
explicitly as well, so tests build them without touching the environment.
"""

import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s"


class Settings(BaseSettings):
    """Notification pipeline settings."""

    model_config = SettingsConfigDict(
        env_prefix="NOTIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Worker
    process_interval_ms: int = Field(default=5000, ge=1, description="Poll tick interval")
    max_batch_size: int = Field(default=5, ge=1, description="Max events dequeued per tick")

    # Retry
    max_attempts: int = Field(default=3, ge=0, description="Retry budget per event")
    retry_backoff_minutes: list[int] = Field(
        default_factory=lambda: [5, 15, 30],
        description="Delay before retry N; the last entry applies beyond the list",
    )
    retry_sweep_interval_ms: int = Field(
        default=60_000,
        ge=1,
        description="How often RETRYING records are swept from the record store",
    )

    # Queue and storage
    queue_max_length: int = Field(default=10_000, ge=1)
    records_path: Optional[Path] = Field(
        default=None,
        description="JSON file for delivery records; in-memory only when unset",
    )

    # Observability
    stats_window_hours: int = Field(default=24, ge=1)
    log_level: str = "INFO"

    # Channels
    email_from: str = "notifications@fintech-bank.example"

    # API
    autostart_worker: bool = True

    @field_validator("retry_backoff_minutes")
    @classmethod
    def _backoff_not_empty(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("retry_backoff_minutes must have at least one entry")
        if any(minutes < 0 for minutes in value):
            raise ValueError("retry_backoff_minutes entries must be non-negative")
        return value

    @property
    def process_interval(self) -> timedelta:
        return timedelta(milliseconds=self.process_interval_ms)

    @property
    def retry_sweep_interval(self) -> timedelta:
        return timedelta(milliseconds=self.retry_sweep_interval_ms)


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Set up console logging for the pipeline loggers."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
