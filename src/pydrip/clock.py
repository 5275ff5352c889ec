"""Time source for the engine.

Everything time-dependent (due times, breaker cooldowns, rate windows,
job availability) reads `clock.now()` so tests can drive time by hand.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def __repr__(self) -> str:
        return "SystemClock"


class ManualClock:
    """Clock that only moves when told to.

    Example:
        clock = ManualClock(datetime(2026, 1, 1, tzinfo=UTC))
        clock.advance(seconds=61)
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2026, 1, 1, 9, 0, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move forward by `delta` or by timedelta keyword arguments."""
        self._now = self._now + (delta if delta is not None else timedelta(**kwargs))
        return self._now

    def set(self, when: datetime) -> None:
        self._now = when

    def __repr__(self) -> str:
        return f"ManualClock({self._now.isoformat()})"
