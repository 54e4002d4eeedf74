"""Retry budget and backoff schedule."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from shared.config import Settings

DEFAULT_BACKOFF_MINUTES = (5, 15, 30)
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how late a failed delivery is retried.

    Retry N (1-based) waits backoff_minutes[N-1]; attempts beyond the
    schedule reuse its last entry.
    """
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_minutes: tuple[int, ...] = field(default=DEFAULT_BACKOFF_MINUTES)

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if not self.backoff_minutes:
            raise ValueError("backoff_minutes must not be empty")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or Settings()
        return cls(
            max_attempts=settings.max_attempts,
            backoff_minutes=tuple(settings.retry_backoff_minutes),
        )

    def delay_for_attempt(self, attempt: int) -> timedelta:
        """Delay before retry number `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        index = min(attempt, len(self.backoff_minutes)) - 1
        return timedelta(minutes=self.backoff_minutes[index])

    def has_budget(self, attempt_count: int) -> bool:
        """True while another retry may be scheduled."""
        return attempt_count < self.max_attempts
