"""Redis-based shared counter store.

Lets every worker and scheduler process see the same breaker and rate
limiter state.

Data Structures:
- {prefix}:breaker:{channel}:failures (STRING int, TTL = failure window)
- {prefix}:breaker:{channel}:opened_at (STRING epoch ms)
- {prefix}:rate:{channel}:{window}:{bucket} (STRING int, TTL = 2x window)

Increments run INCRBY and EXPIRE NX in one MULTI/EXEC pipeline, so the
TTL is set only when the key is created.

Design: Adapter Pattern
Adapts Redis strings to the CounterStore interface.
"""

from __future__ import annotations

from datetime import timedelta

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisCounterStore. Install with: pip install redis")

from pydrip.counters.base import CounterStore
from pydrip.storage.base import StorageError


class RedisCounterStore(CounterStore):
    """Redis counters using a connection pool.

    Usage:
        counters = RedisCounterStore("redis://localhost:6379")
        await counters.connect()
        await counters.increment_with_expiry("pydrip:rate:email:second:1", timedelta(seconds=2))
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        namespace: str = "pydrip",
    ):
        """Initialize the store (connection not opened yet).

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            namespace: Key prefix cleared by reset()
        """
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._namespace = namespace
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisCounterStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish the Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._redis

    @staticmethod
    def _ttl_ms(ttl: timedelta) -> int:
        return max(1, int(ttl.total_seconds() * 1000))

    async def get(self, key: str) -> int | None:
        try:
            value = await self._client().get(key)
        except redis.RedisError as e:
            raise StorageError(f"Failed to read counter {key}: {e}") from e
        return None if value is None else int(value)

    async def get_many(self, keys: list[str]) -> list[int | None]:
        if not keys:
            return []
        try:
            values = await self._client().mget(keys)
        except redis.RedisError as e:
            raise StorageError(f"Failed to read counters: {e}") from e
        return [None if v is None else int(v) for v in values]

    async def increment_with_expiry(self, key: str, ttl: timedelta, amount: int = 1) -> int:
        client = self._client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                pipe.pexpire(key, self._ttl_ms(ttl), nx=True)
                value, _ = await pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"Failed to increment counter {key}: {e}") from e
        return int(value)

    async def set_with_expiry(self, key: str, value: int, ttl: timedelta) -> None:
        try:
            await self._client().set(key, value, px=self._ttl_ms(ttl))
        except redis.RedisError as e:
            raise StorageError(f"Failed to set counter {key}: {e}") from e

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client().delete(*keys)
        except redis.RedisError as e:
            raise StorageError(f"Failed to delete counters: {e}") from e

    async def reset(self) -> None:
        """Delete every key under the namespace (for testing/demos)."""
        client = self._client()
        keys = [key async for key in client.scan_iter(match=f"{self._namespace}:*")]
        if keys:
            await client.delete(*keys)
