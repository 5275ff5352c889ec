"""Per-channel circuit breaker over a shared counter store.

States:
    CLOSED     sends flow; failures are counted within `failure_window`
    OPEN       sends are short-circuited until `opened_at + recovery_time`
    HALF_OPEN  reached by elapsed time only; the next attempt's outcome
               decides: success closes and resets, failure re-opens

There is no probe request. Several workers may pass through HALF_OPEN
at once before the first outcome is recorded.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from pydrip.clock import Clock, SystemClock
from pydrip.config import BreakerSettings
from pydrip.counters.base import CounterStore
from pydrip.models.status import Channel

logger = logging.getLogger(__name__)

OpenListener = Callable[[Channel, int], Awaitable[None] | None]


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class BreakerStatus:
    channel: Channel
    state: BreakerState
    failures: int
    threshold: int
    opened_at: datetime | None
    seconds_until_recovery: float

    @property
    def is_open(self) -> bool:
        return self.state is BreakerState.OPEN


def _to_ms(when: datetime) -> int:
    return int(when.timestamp() * 1000)


class CircuitBreaker:
    """Fault detector shared by every worker sending on a channel.

    Usage:
        breaker = CircuitBreaker(counters, BreakerSettings(failure_threshold=3))
        if await breaker.allow(Channel.EMAIL):
            ok = await send()
            if ok:
                await breaker.record_success(Channel.EMAIL)
            else:
                await breaker.record_failure(Channel.EMAIL)
    """

    def __init__(
        self,
        counters: CounterStore,
        settings: BreakerSettings | None = None,
        clock: Clock | None = None,
        key_prefix: str = "pydrip",
    ):
        self._counters = counters
        self._settings = settings or BreakerSettings()
        self._clock = clock or SystemClock()
        self._prefix = key_prefix
        self._listeners: list[OpenListener] = []

    @property
    def settings(self) -> BreakerSettings:
        return self._settings

    def failures_key(self, channel: Channel) -> str:
        return f"{self._prefix}:breaker:{channel}:failures"

    def opened_at_key(self, channel: Channel) -> str:
        return f"{self._prefix}:breaker:{channel}:opened_at"

    def add_listener(self, listener: OpenListener) -> None:
        """Call `listener(channel, failures)` whenever the breaker opens."""
        self._listeners.append(listener)

    async def _opened_at_ms(self, channel: Channel) -> int | None:
        return await self._counters.get(self.opened_at_key(channel))

    def _recovery_ms(self) -> int:
        return int(self._settings.recovery_time.total_seconds() * 1000)

    async def state(self, channel: Channel) -> BreakerState:
        opened_ms = await self._opened_at_ms(channel)
        if opened_ms is None:
            return BreakerState.CLOSED
        if _to_ms(self._clock.now()) >= opened_ms + self._recovery_ms():
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    async def allow(self, channel: Channel) -> bool:
        """Return False while the breaker is OPEN."""
        return await self.state(channel) is not BreakerState.OPEN

    async def retry_after(self, channel: Channel) -> timedelta:
        """Time left until the breaker lets the next attempt through."""
        opened_ms = await self._opened_at_ms(channel)
        if opened_ms is None:
            return timedelta(0)
        remaining = opened_ms + self._recovery_ms() - _to_ms(self._clock.now())
        return timedelta(milliseconds=max(0, remaining))

    async def record_success(self, channel: Channel) -> None:
        if await self.state(channel) is BreakerState.HALF_OPEN:
            await self._counters.delete(self.failures_key(channel), self.opened_at_key(channel))
            logger.info(f"Circuit breaker for {channel} closed after successful attempt")

    async def record_failure(self, channel: Channel) -> None:
        state = await self.state(channel)
        if state is BreakerState.HALF_OPEN:
            failures = await self._counters.get(self.failures_key(channel)) or 0
            await self._open(channel, failures)
            return

        failures = await self._counters.increment_with_expiry(
            self.failures_key(channel), self._settings.failure_window
        )
        if state is BreakerState.CLOSED and failures >= self._settings.failure_threshold:
            await self._open(channel, failures)

    async def _open(self, channel: Channel, failures: int) -> None:
        now = self._clock.now()
        # Outlive the recovery period so HALF_OPEN stays observable.
        ttl = max(self._settings.recovery_time * 10, self._settings.failure_window)
        await self._counters.set_with_expiry(self.opened_at_key(channel), _to_ms(now), ttl)
        logger.warning(
            f"Circuit breaker for {channel} opened: failures={failures}, "
            f"recovery_time={self._settings.recovery_time}"
        )

        for listener in self._listeners:
            try:
                result = listener(channel, failures)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Circuit breaker listener {listener!r} failed: {e}")

    async def reset(self, channel: Channel) -> None:
        """Manual reset: close immediately, bypassing recovery_time."""
        await self._counters.delete(self.failures_key(channel), self.opened_at_key(channel))
        logger.warning(f"Circuit breaker for {channel} manually reset")

    async def status(self, channel: Channel) -> BreakerStatus:
        state = await self.state(channel)
        failures = await self._counters.get(self.failures_key(channel)) or 0
        opened_ms = await self._opened_at_ms(channel)
        opened_at = (
            datetime.fromtimestamp(opened_ms / 1000.0, tz=UTC) if opened_ms is not None else None
        )
        remaining = await self.retry_after(channel) if state is BreakerState.OPEN else timedelta(0)
        return BreakerStatus(
            channel=channel,
            state=state,
            failures=failures,
            threshold=self._settings.failure_threshold,
            opened_at=opened_at,
            seconds_until_recovery=remaining.total_seconds(),
        )
