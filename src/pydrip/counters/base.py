"""Abstract shared counter store.

Circuit breaker and rate limiter state lives behind this capability
instead of in process globals, so tests use an in-memory fake and
production shares one Redis across workers.

Updates are not locked. Concurrent increments may race on expiry, and
callers tolerate that imprecision.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta


class CounterStore(ABC):
    """Keyed integer counters with time-to-live."""

    @abstractmethod
    async def get(self, key: str) -> int | None:
        """Return the counter value, or None if absent or expired."""
        pass

    @abstractmethod
    async def increment_with_expiry(self, key: str, ttl: timedelta, amount: int = 1) -> int:
        """Add `amount` and return the new value.

        The TTL is applied when the key is created; later increments do
        not extend it, so a window started by the first increment closes
        on schedule.
        """
        pass

    @abstractmethod
    async def set_with_expiry(self, key: str, value: int, ttl: timedelta) -> None:
        """Overwrite the value and reset its TTL."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        """Remove keys; missing keys are ignored."""
        pass

    async def get_many(self, keys: list[str]) -> list[int | None]:
        """Read several counters. Adapters may batch this."""
        return [await self.get(key) for key in keys]

    async def reset(self) -> None:
        """Clear all counters (for testing)."""
        raise NotImplementedError(f"{type(self).__name__} does not support reset")

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
        return None
