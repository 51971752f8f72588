"""
Retry policy for pipeline jobs.

The orchestrator asks the policy two questions after a stage raises:
  1. Is this error worth retrying?     (is_retryable)
  2. How long until the next attempt?  (delay_for)

Attempts are counted from 1. With the defaults the schedule is
2s → 4s → (exhausted after 3 attempts).
"""

from __future__ import annotations

from dataclasses import dataclass

from docintel.core.errors import InvalidConfiguration, is_transient


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int   = 3
    base_delay:   float = 2.0
    max_delay:    float = 60.0
    multiplier:   float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidConfiguration("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.multiplier < 1:
            raise InvalidConfiguration("retry delays must be >= 0 and multiplier >= 1")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.pipeline_max_attempts,
            base_delay=settings.pipeline_retry_base_delay,
            max_delay=settings.pipeline_retry_max_delay,
            multiplier=settings.pipeline_retry_multiplier,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        return is_transient(exc)

    def delay_for(self, attempt: int) -> float:
        """Back-off after failed attempt number `attempt` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def should_retry(self, exc: BaseException, attempt: int, max_attempts: int | None = None) -> bool:
        budget = self.max_attempts if max_attempts is None else max_attempts
        return attempt < budget and self.is_retryable(exc)

    def schedule(self) -> list[float]:
        """Every delay this policy can produce, in order."""
        return [self.delay_for(n) for n in range(1, self.max_attempts)]
