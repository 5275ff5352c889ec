"""
Retry policy for background jobs.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates how often and how patiently a failed job is
re-queued, so the worker loop does not hard-code backoff arithmetic.

Throttling (rate limit, open breaker) does not go through this policy;
it is bounded by the per-channel `max_retries` in the engine config.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for jobs that raised an unexpected error.

    Examples:
        policy = RetryPolicy.STANDARD
        policy.delay_for_attempt(1)  # timedelta(seconds=1)
        policy.delay_for_attempt(3)  # None: park the job

        policy = RetryPolicy(max_attempts=5, initial_delay_ms=500,
                             max_delay_ms=10_000, backoff_multiplier=3.0)
    """

    max_attempts: int
    """Maximum number of attempts, including the first one."""

    initial_delay_ms: int
    """Delay before the first retry in milliseconds."""

    max_delay_ms: int
    """Upper bound for any single delay in milliseconds."""

    backoff_multiplier: float
    """Growth factor applied per attempt."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
        PATIENT: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)
        PATIENT = cast("RetryPolicy", None)

    @classmethod
    def named(cls, name: str) -> RetryPolicy:
        """Look up a preset by name (case-insensitive).

        Raises:
            ValueError: If `name` is not NONE, STANDARD or PATIENT
        """
        presets = {"none": cls.NONE, "standard": cls.STANDARD, "patient": cls.PATIENT}
        try:
            return presets[name.strip().lower()]
        except KeyError:
            raise ValueError(
                f"Unknown retry policy {name!r}; expected one of: {', '.join(presets)}"
            ) from None

    def delay_for_attempt(self, attempt: int) -> timedelta | None:
        """
        Return the delay before the next attempt, or None when exhausted.

        Args:
            attempt: Number of attempts already made (1-indexed)

        Returns:
            Backoff delay, capped at max_delay_ms, or None if
            `attempt` has reached max_attempts.
        """
        if attempt >= self.max_attempts:
            return None

        delay_ms = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return timedelta(milliseconds=min(delay_ms, self.max_delay_ms))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier})"
        )


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=3,
    initial_delay_ms=1000,
    max_delay_ms=30000,
    backoff_multiplier=2.0,
)

RetryPolicy.PATIENT = RetryPolicy(
    max_attempts=6,
    initial_delay_ms=5000,
    max_delay_ms=300_000,
    backoff_multiplier=3.0,
)


class RetryableError(Exception):
    """
    Base class for errors that declare whether a job should be retried.

    The worker consults `is_retryable()` when a handler raises: retryable
    errors go back to the queue with backoff, others park the job as
    failed immediately.

    Example:
        class ProviderTimeout(RetryableError):
            pass

        class BadTemplate(RetryableError):
            def is_retryable(self) -> bool:
                return False
    """

    def is_retryable(self) -> bool:
        """Return True if the failure is transient."""
        return True
