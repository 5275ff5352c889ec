"""Fixed-window send caps per channel.

Three independent counters per channel, one per second, minute and
hour bucket, keyed by the truncated epoch time. A send is allowed only
if every window is below its cap; a rejected send increments nothing.

Buckets reset on wall-clock boundaries, so up to twice a cap can pass
around a boundary. That burst is accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from pydrip.clock import Clock, SystemClock
from pydrip.config import ChannelLimits, EngineConfig
from pydrip.counters.base import CounterStore
from pydrip.models.status import Channel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Window:
    name: str
    seconds: int

    def bucket(self, epoch_seconds: int) -> int:
        return epoch_seconds // self.seconds

    def ttl(self) -> timedelta:
        return timedelta(seconds=self.seconds * 2)

    def cap(self, limits: ChannelLimits) -> int | None:
        return getattr(limits, f"per_{self.name}")


WINDOWS: tuple[_Window, ...] = (
    _Window("second", 1),
    _Window("minute", 60),
    _Window("hour", 3600),
)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: timedelta = timedelta(0)
    window: str | None = None
    """Name of the window that rejected the send."""


@dataclass(frozen=True)
class WindowUsage:
    used: int
    limit: int | None

    @property
    def percentage(self) -> float:
        if not self.limit:
            return 0.0
        return round(100.0 * self.used / self.limit, 2)


class RateLimiter:
    """Per-channel throughput cap over shared counters.

    Usage:
        limiter = RateLimiter(counters, config, clock)
        decision = await limiter.acquire(Channel.EMAIL)
        if not decision.allowed:
            defer(decision.retry_after)
    """

    def __init__(
        self,
        counters: CounterStore,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
    ):
        self._counters = counters
        self._config = config or EngineConfig()
        self._clock = clock or SystemClock()

    def _key(self, channel: Channel, window: _Window, epoch_seconds: int) -> str:
        return (
            f"{self._config.key_prefix}:rate:{channel}:{window.name}:"
            f"{window.bucket(epoch_seconds)}"
        )

    def _epoch_seconds(self) -> int:
        return int(self._clock.now().timestamp())

    async def acquire(self, channel: Channel) -> RateDecision:
        """Take one send slot, or report how long to wait.

        Check then increment is not atomic; concurrent workers may
        overshoot a cap slightly.
        """
        limits = self._config.limits_for(channel)
        epoch = self._epoch_seconds()
        keys = [self._key(channel, w, epoch) for w in WINDOWS]
        used = await self._counters.get_many(keys)

        for window, count in zip(WINDOWS, used, strict=True):
            cap = window.cap(limits)
            if cap is not None and (count or 0) >= cap:
                remaining = window.seconds - (epoch % window.seconds)
                logger.debug(
                    f"Rate limit reached for {channel} ({window.name}: {count}/{cap}), "
                    f"retry in {remaining}s"
                )
                return RateDecision(
                    allowed=False, retry_after=timedelta(seconds=remaining), window=window.name
                )

        for window, key in zip(WINDOWS, keys, strict=True):
            await self._counters.increment_with_expiry(key, window.ttl())
        return RateDecision(allowed=True)

    async def status(self, channel: Channel) -> dict[str, WindowUsage]:
        """Usage of the current bucket in each window."""
        limits = self._config.limits_for(channel)
        epoch = self._epoch_seconds()
        used = await self._counters.get_many([self._key(channel, w, epoch) for w in WINDOWS])
        return {
            window.name: WindowUsage(used=count or 0, limit=window.cap(limits))
            for window, count in zip(WINDOWS, used, strict=True)
        }
