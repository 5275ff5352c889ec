"""Shared counter stores for channel runtime state.

    - CounterStore: Abstract interface
    - InMemoryCounterStore: Single-process store driven by a clock
    - RedisCounterStore: Redis store shared across workers
"""

from pydrip.counters.base import CounterStore
from pydrip.counters.memory import InMemoryCounterStore


def __getattr__(name: str):
    """Lazy import so redis is only required when actually used."""
    if name == "RedisCounterStore":
        from pydrip.counters.redis import RedisCounterStore

        return RedisCounterStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
]
