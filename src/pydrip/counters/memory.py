"""In-memory counter store.

Expiry is computed against an injected clock, so tests that advance a
manual clock see windows and breaker cooldowns elapse without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydrip.counters.base import CounterStore


def _system_now() -> datetime:
    return datetime.now(UTC)


class InMemoryCounterStore(CounterStore):
    """Dictionary-backed counters for a single process.

    Usage:
        clock = ManualClock()
        counters = InMemoryCounterStore(clock.now)
        await counters.increment_with_expiry("k", timedelta(seconds=2))
    """

    def __init__(self, now: Callable[[], datetime] | None = None):
        self._now = now or _system_now
        # {key: (value, expires_at)}
        self._values: dict[str, tuple[int, datetime | None]] = {}

    def __repr__(self) -> str:
        return f"InMemoryCounterStore(keys={len(self._values)})"

    def _live(self, key: str) -> tuple[int, datetime | None] | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._values[key]
            return None
        return entry

    async def get(self, key: str) -> int | None:
        entry = self._live(key)
        return None if entry is None else entry[0]

    async def increment_with_expiry(self, key: str, ttl: timedelta, amount: int = 1) -> int:
        entry = self._live(key)
        if entry is None:
            value, expires_at = amount, self._now() + ttl
        else:
            value, expires_at = entry[0] + amount, entry[1]
        self._values[key] = (value, expires_at)
        return value

    async def set_with_expiry(self, key: str, value: int, ttl: timedelta) -> None:
        self._values[key] = (value, self._now() + ttl)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._values.pop(key, None)

    async def reset(self) -> None:
        self._values.clear()
