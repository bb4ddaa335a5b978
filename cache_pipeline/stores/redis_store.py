"""
Redis-backed cache store (the shared L2 tier).
"""

import time
from contextlib import nullcontext
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import CacheUnavailableError
from shared.logging import get_logger
from shared.metrics import CacheMetrics
from .base import CacheStore, Expiration, DEFAULT_EXPIRATION, resolve_options
from .serialization import JsonSerializer

SLIDING_SUFFIX = ":__sliding"
SCAN_BATCH_SIZE = 100


def _escape_glob(value: str) -> str:
    """Escape SCAN MATCH metacharacters so prefixes match literally."""
    for ch in ("\\", "*", "?", "[", "]"):
        value = value.replace(ch, "\\" + ch)
    return value


def _as_text(key) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


def _to_millis(window) -> int:
    return max(1, int(window.total_seconds() * 1000))


class RedisCacheStore(CacheStore):
    """Cache store on ``redis.asyncio``.

    Absolute entries use ``SET ... PX``. Sliding entries additionally keep a
    ``{key}:__sliding`` marker holding the window in milliseconds; reads and
    ``refresh`` re-apply the window to both keys.

    Every backend call goes through the circuit breaker. Redis failures are
    raised as ``CacheUnavailableError``; an open breaker raises
    ``CircuitBreakerOpenException`` without touching Redis.
    """

    def __init__(
        self,
        client: "redis.Redis",
        serializer=None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[CacheMetrics] = None,
        default_expiration=DEFAULT_EXPIRATION,
        level: str = "L2",
    ):
        self.redis = client
        self.serializer = serializer or JsonSerializer()
        self.breaker = circuit_breaker or CircuitBreaker(
            name="redis-cache",
            expected_exception=(RedisError, OSError),
        )
        self.metrics = metrics
        self.default_expiration = default_expiration
        self.level = level
        self.logger = get_logger("cache.store.redis")

    async def start(self):
        """Verify connectivity."""
        await self._execute("ping", "", self.redis.ping)
        self.logger.info("Redis cache store started")

    async def stop(self):
        """Close the connection pool."""
        await self.redis.aclose()
        self.logger.info("Redis cache store stopped")

    async def _execute(self, operation: str, key: str, func, *args, **kwargs):
        timer = self.metrics.time_operation(operation, self.level) if self.metrics else nullcontext()
        try:
            with timer:
                return await self.breaker.call(func, *args, **kwargs)
        except CircuitBreakerOpenException:
            raise
        except (RedisError, OSError) as exc:
            self.logger.warning(
                "Redis cache operation failed",
                operation=operation,
                key=key,
                error=str(exc)
            )
            raise CacheUnavailableError(
                f"Redis {operation} failed: {exc}",
                {"operation": operation, "key": key}
            ) from exc

    async def get(self, key: str) -> Optional[Any]:
        start = time.perf_counter()
        data, window = await self._execute("get", key, self.redis.mget, [key, key + SLIDING_SUFFIX])

        if data is None:
            if self.metrics:
                self.metrics.record_miss(key, time.perf_counter() - start, self.level)
            return None

        if window is not None:
            await self._touch(key, int(window))

        if self.metrics:
            self.metrics.record_hit(key, time.perf_counter() - start, self.level)
        return self.serializer.loads(data)

    async def set(self, key: str, value: Any, expiration: Expiration = None) -> None:
        if value is None:
            return

        options = resolve_options(expiration, self.default_expiration)
        data = self.serializer.dumps(value)
        px = _to_millis(options.expiration)

        pipe = self.redis.pipeline(transaction=False)
        pipe.set(key, data, px=px)
        if options.is_sliding:
            pipe.set(key + SLIDING_SUFFIX, px, px=px)
        else:
            pipe.delete(key + SLIDING_SUFFIX)
        await self._execute("set", key, pipe.execute)

    async def remove(self, key: str) -> None:
        removed = await self._execute("remove", key, self.redis.delete, key, key + SLIDING_SUFFIX)
        if removed and self.metrics:
            self.metrics.record_eviction(key, self.level)

    async def remove_by_prefix(self, prefix: str) -> int:
        """SCAN for ``prefix*`` and delete matches in batches."""
        pattern = _escape_glob(prefix) + "*"
        removed = 0
        cursor = 0
        batch: List[str] = []

        while True:
            cursor, keys = await self._execute(
                "remove_by_prefix", prefix, self.redis.scan,
                cursor=cursor, match=pattern, count=SCAN_BATCH_SIZE
            )
            for raw in keys:
                batch.append(_as_text(raw))
                if len(batch) >= SCAN_BATCH_SIZE:
                    removed += await self._delete_batch(prefix, batch)
                    batch = []
            if int(cursor) == 0:
                break

        if batch:
            removed += await self._delete_batch(prefix, batch)

        self.logger.info("Removed cache entries by prefix", prefix=prefix, count=removed)
        return removed

    async def _delete_batch(self, prefix: str, keys: List[str]) -> int:
        await self._execute("remove_by_prefix", prefix, self.redis.delete, *keys)
        entries = [k for k in keys if not k.endswith(SLIDING_SUFFIX)]
        if self.metrics:
            for key in entries:
                self.metrics.record_eviction(key, self.level)
        return len(entries)

    async def refresh(self, key: str) -> None:
        window = await self._execute("refresh", key, self.redis.get, key + SLIDING_SUFFIX)
        if window is not None:
            await self._touch(key, int(window))

    async def ttl(self, key: str) -> Optional[timedelta]:
        remaining = await self._execute("ttl", key, self.redis.pttl, key)
        if remaining == -2:
            return timedelta(0)
        if remaining < 0:
            return None
        return timedelta(milliseconds=remaining)

    async def _touch(self, key: str, window_ms: int) -> None:
        pipe = self.redis.pipeline(transaction=False)
        pipe.pexpire(key, window_ms)
        pipe.pexpire(key + SLIDING_SUFFIX, window_ms)
        await self._execute("refresh", key, pipe.execute)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        keys = list(keys)
        if not keys:
            return {}
        values = await self._execute("get_many", keys[0], self.redis.mget, keys)
        return {
            key: (self.serializer.loads(data) if data is not None else None)
            for key, data in zip(keys, values)
        }

    async def set_many(self, items: Mapping[str, Any], expiration: Expiration = None) -> None:
        items = {k: v for k, v in items.items() if v is not None}
        if not items:
            return

        options = resolve_options(expiration, self.default_expiration)
        px = _to_millis(options.expiration)
        pipe = self.redis.pipeline(transaction=False)
        for key, value in items.items():
            pipe.set(key, self.serializer.dumps(value), px=px)
            if options.is_sliding:
                pipe.set(key + SLIDING_SUFFIX, px, px=px)
            else:
                pipe.delete(key + SLIDING_SUFFIX)
        await self._execute("set_many", next(iter(items)), pipe.execute)
