"""Engine configuration.

All knobs are immutable dataclasses with working defaults. `from_env()`
overlays PYDRIP_* environment variables, and the `with_*` builders
return modified copies:

    config = EngineConfig.from_env().with_breaker(failure_threshold=3)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta

from pydrip.models.retry import RetryPolicy
from pydrip.models.status import Channel


@dataclass(frozen=True)
class ChannelLimits:
    """Fixed-window send caps for one channel. None means unlimited."""

    per_second: int | None
    per_minute: int | None
    per_hour: int | None

    backoff_seconds: float
    """Minimum delay before a throttled job is retried."""

    max_retries: int
    """Throttled deferrals allowed before the job is parked as failed."""


@dataclass(frozen=True)
class BreakerSettings:
    failure_threshold: int = 10
    """Failures within `failure_window` that open the breaker."""

    recovery_time: timedelta = timedelta(seconds=60)
    """How long the breaker stays open before the next attempt is let through."""

    failure_window: timedelta = timedelta(seconds=60)
    """Lifetime of the failure counter, started by the first failure."""


def _default_limits() -> dict[Channel, ChannelLimits]:
    return {
        Channel.EMAIL: ChannelLimits(
            per_second=2, per_minute=150, per_hour=8000, backoff_seconds=5, max_retries=3
        ),
        Channel.SMS: ChannelLimits(
            per_second=5, per_minute=200, per_hour=5000, backoff_seconds=10, max_retries=3
        ),
    }


def _default_costs() -> dict[Channel, float]:
    return {Channel.EMAIL: 0.0, Channel.SMS: 0.0}


@dataclass(frozen=True)
class EngineConfig:
    """Everything the engine reads at runtime besides its collaborators."""

    rate_limits: dict[Channel, ChannelLimits] = field(default_factory=_default_limits)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)
    unit_costs: dict[Channel, float] = field(default_factory=_default_costs)
    """Cost charged per successful send, by channel."""

    job_retry: RetryPolicy = RetryPolicy.STANDARD
    """Backoff for jobs that raised an unexpected error."""

    key_prefix: str = "pydrip"
    """Namespace for shared counter keys."""

    paused_recheck: timedelta = timedelta(seconds=60)
    """How long a job for a paused execution waits before checking again."""

    def limits_for(self, channel: Channel) -> ChannelLimits:
        try:
            return self.rate_limits[channel]
        except KeyError:
            raise ValueError(f"No rate limits configured for channel {channel}") from None

    def unit_cost(self, channel: Channel) -> float:
        return self.unit_costs.get(channel, 0.0)

    def with_rate_limits(self, channel: Channel, **changes) -> EngineConfig:
        """Copy with some limits of `channel` replaced."""
        limits = dict(self.rate_limits)
        limits[channel] = replace(self.limits_for(channel), **changes)
        return replace(self, rate_limits=limits)

    def with_breaker(self, **changes) -> EngineConfig:
        return replace(self, breaker=replace(self.breaker, **changes))

    def with_unit_cost(self, channel: Channel, cost: float) -> EngineConfig:
        costs = dict(self.unit_costs)
        costs[channel] = cost
        return replace(self, unit_costs=costs)

    def with_job_retry(self, policy: RetryPolicy) -> EngineConfig:
        return replace(self, job_retry=policy)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Read overrides from the environment.

        Recognized variables (all optional):
            PYDRIP_KEY_PREFIX
            PYDRIP_{EMAIL,SMS}_PER_SECOND / _PER_MINUTE / _PER_HOUR
            PYDRIP_{EMAIL,SMS}_BACKOFF_SECONDS / _MAX_RETRIES
            PYDRIP_{EMAIL,SMS}_UNIT_COST
            PYDRIP_BREAKER_THRESHOLD
            PYDRIP_BREAKER_RECOVERY_SECONDS
            PYDRIP_BREAKER_WINDOW_SECONDS
            PYDRIP_JOB_RETRY (none, standard or patient)
            PYDRIP_JOB_MAX_ATTEMPTS
            PYDRIP_PAUSED_RECHECK_SECONDS

        Raises:
            ValueError: If a variable is set to something unparseable
        """
        config = cls()

        limits = {}
        costs = dict(config.unit_costs)
        for channel, current in config.rate_limits.items():
            prefix = f"PYDRIP_{channel.name}_"
            limits[channel] = ChannelLimits(
                per_second=_env_cap(prefix + "PER_SECOND", current.per_second),
                per_minute=_env_cap(prefix + "PER_MINUTE", current.per_minute),
                per_hour=_env_cap(prefix + "PER_HOUR", current.per_hour),
                backoff_seconds=float(
                    os.getenv(prefix + "BACKOFF_SECONDS", current.backoff_seconds)
                ),
                max_retries=int(os.getenv(prefix + "MAX_RETRIES", current.max_retries)),
            )
            costs[channel] = float(os.getenv(prefix + "UNIT_COST", costs[channel]))

        breaker = BreakerSettings(
            failure_threshold=int(
                os.getenv("PYDRIP_BREAKER_THRESHOLD", config.breaker.failure_threshold)
            ),
            recovery_time=timedelta(
                seconds=float(
                    os.getenv(
                        "PYDRIP_BREAKER_RECOVERY_SECONDS",
                        config.breaker.recovery_time.total_seconds(),
                    )
                )
            ),
            failure_window=timedelta(
                seconds=float(
                    os.getenv(
                        "PYDRIP_BREAKER_WINDOW_SECONDS",
                        config.breaker.failure_window.total_seconds(),
                    )
                )
            ),
        )

        job_retry = config.job_retry
        preset = os.getenv("PYDRIP_JOB_RETRY")
        if preset is not None:
            job_retry = RetryPolicy.named(preset)
        max_attempts = os.getenv("PYDRIP_JOB_MAX_ATTEMPTS")
        if max_attempts is not None:
            job_retry = replace(job_retry, max_attempts=int(max_attempts))

        return cls(
            rate_limits=limits,
            breaker=breaker,
            unit_costs=costs,
            job_retry=job_retry,
            key_prefix=os.getenv("PYDRIP_KEY_PREFIX", config.key_prefix),
            paused_recheck=timedelta(
                seconds=float(
                    os.getenv(
                        "PYDRIP_PAUSED_RECHECK_SECONDS", config.paused_recheck.total_seconds()
                    )
                )
            ),
        )


def _env_cap(name: str, default: int | None) -> int | None:
    """Parse a cap; "none", "" or a non-positive number means unlimited."""
    raw = os.getenv(name)
    if raw is None:
        return default
    if raw.strip().lower() in ("", "none", "unlimited"):
        return None
    value = int(raw)
    return value if value > 0 else None
