from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from ..config import RetryConfig
from ..constants import (
    DEFAULT_BACKOFF_BASE_MINUTES,
    DEFAULT_BACKOFF_CEILING_MINUTES,
    DEFAULT_MAX_RETRIES,
)


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE_MINUTES,
    ceiling: float = DEFAULT_BACKOFF_CEILING_MINUTES,
) -> float:
    """Compute capped exponential backoff in minutes. No jitter, so it is pure."""
    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    # Stop doubling once past the ceiling; large exponents would overflow.
    delay = float(base)
    for _ in range(attempt):
        delay *= 2
        if delay >= ceiling:
            return float(ceiling)
    return min(delay, float(ceiling))


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff schedule for transient dispatch failures."""

    base_minutes: float = DEFAULT_BACKOFF_BASE_MINUTES
    ceiling_minutes: float = DEFAULT_BACKOFF_CEILING_MINUTES
    max_retries: int = DEFAULT_MAX_RETRIES

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            base_minutes=config.base_minutes,
            ceiling_minutes=config.ceiling_minutes,
            max_retries=config.max_retries,
        )

    def delay_for(self, attempt_count: int) -> timedelta:
        return timedelta(
            minutes=compute_backoff(attempt_count, self.base_minutes, self.ceiling_minutes)
        )

    def exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_retries
