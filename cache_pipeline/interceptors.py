"""
Cache-aside interception for the request pipeline.

``ReadInterceptor`` serves cacheable queries from the store and populates it on
a miss; ``WriteInterceptor`` invalidates affected entries after a command
succeeds. Both take ``(request, next)`` where ``next`` is a zero-argument
coroutine function running the real handler.

Cache failures never reach the caller: they are logged, counted, and the
request falls through to its handler. Handler failures always propagate.
"""

import asyncio
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from shared.circuit_breaker import CircuitBreakerOpenException
from shared.logging import get_logger, reset_request_type, set_request_type
from shared.metrics import CacheMetrics
from .effectiveness import EffectivenessTracker
from .invalidation import InvalidationPublisher
from .keys import KeyScope
from .locking import DistributedLock, LockHandle, NoOpDistributedLock
from .requests import CacheableDescriptor, InvalidatableDescriptor, cache_policy_of
from .stores.base import CacheEntryOptions, CacheStore, Expiration
from .stores.serialization import restore

Next = Callable[[], Awaitable[Any]]

LOCK_PREFIX = "lock:"
DEFAULT_LOCK_EXPIRY = timedelta(seconds=10)
DEFAULT_LOCK_WAIT = timedelta(milliseconds=150)
DEFAULT_INVALIDATION_TIMEOUT = timedelta(seconds=5)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _payload_size(value: Any) -> int:
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    return 0


def _report_store_failure(logger, metrics: Optional[CacheMetrics], operation: str, key: str, exc: Exception) -> None:
    """Log and count a cache-layer failure on the request path."""
    if isinstance(exc, CircuitBreakerOpenException):
        logger.debug("Cache bypassed, circuit breaker open", operation=operation, key=key)
        if metrics:
            metrics.record_circuit_breaker_bypass()
        return

    logger.warning("Cache operation failed", operation=operation, key=key, error=str(exc))
    if metrics:
        metrics.record_error(key, operation)


class ReadInterceptor:
    """Get-or-create with stampede protection for cacheable requests."""

    def __init__(
        self,
        store: CacheStore,
        scope: KeyScope,
        lock: Optional[DistributedLock] = None,
        metrics: Optional[CacheMetrics] = None,
        tracker: Optional[EffectivenessTracker] = None,
        lock_expiry: timedelta = DEFAULT_LOCK_EXPIRY,
        lock_wait: timedelta = DEFAULT_LOCK_WAIT,
        lock_retry_attempts: int = 1,
        enabled: bool = True,
        enable_logging: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if lock_expiry <= timedelta(0):
            raise ValueError("lock_expiry must be positive")
        if lock_retry_attempts < 0:
            raise ValueError("lock_retry_attempts must not be negative")

        self.store = store
        self.scope = scope
        self.lock = lock or NoOpDistributedLock()
        self.metrics = metrics
        self.tracker = tracker
        self.lock_expiry = lock_expiry
        self.lock_wait = lock_wait
        self.lock_retry_attempts = lock_retry_attempts
        self.enabled = enabled
        self.enable_logging = enable_logging
        self._sleep = sleep
        self.logger = get_logger("cache.interceptor.read")

    async def handle(self, request: Any, next: Next) -> Any:
        policy = cache_policy_of(request)
        if not self.enabled or not isinstance(policy, CacheableDescriptor):
            return await next()

        key = self.scope.scope(policy.logical_key)
        start = time.perf_counter()

        cached = await self._safe_get(key, policy.response_type)
        if cached is not None:
            if self.tracker:
                self.tracker.record_hit(key, _elapsed_ms(start), _payload_size(cached))
            self._debug("Cache hit", key=key)
            return cached

        if self.tracker:
            self.tracker.record_miss(key, _elapsed_ms(start))
        self._debug("Cache miss", key=key)

        handle = await self._try_lock(key)
        if handle is None:
            return await self._wait_for_owner(key, policy, next)

        async with handle:
            # Another instance may have populated the key while we waited
            cached = await self._safe_get(key, policy.response_type)
            if cached is not None:
                return cached

            result = await next()
            if result is not None:
                await self._safe_set(key, result, self._entry_options(policy))
            return result

    async def _wait_for_owner(self, key: str, policy: CacheableDescriptor, next: Next) -> Any:
        """Lock held elsewhere: poll the cache briefly, then run the handler uncached."""
        for attempt in range(self.lock_retry_attempts):
            await self._sleep(self.lock_wait.total_seconds())
            cached = await self._safe_get(key, policy.response_type)
            if cached is not None:
                self._debug("Cache populated by lock owner", key=key, attempt=attempt + 1)
                return cached

        self._debug("Lock contention, executing handler without caching", key=key)
        return await next()

    async def _try_lock(self, key: str) -> Optional[LockHandle]:
        try:
            return await self.lock.try_acquire(LOCK_PREFIX + key, self.lock_expiry)
        except Exception as e:
            _report_store_failure(self.logger, self.metrics, "lock", key, e)
            return None

    def _entry_options(self, policy: CacheableDescriptor) -> Expiration:
        if not policy.tags:
            return policy.duration
        return CacheEntryOptions.absolute(policy.duration, *(self.scope.scope(tag) for tag in policy.tags))

    async def _safe_get(self, key: str, response_type: Any = None) -> Optional[Any]:
        try:
            return restore(await self.store.get(key), response_type)
        except Exception as e:
            _report_store_failure(self.logger, self.metrics, "get", key, e)
            return None

    async def _safe_set(self, key: str, value: Any, expiration: Expiration) -> None:
        try:
            await self.store.set(key, value, expiration)
        except Exception as e:
            _report_store_failure(self.logger, self.metrics, "set", key, e)

    def _debug(self, event: str, **kw) -> None:
        if self.enable_logging:
            self.logger.debug(event, **kw)


class WriteInterceptor:
    """Runs the handler, then invalidates locally and fans out to other instances."""

    def __init__(
        self,
        store: CacheStore,
        scope: KeyScope,
        publisher: Optional[InvalidationPublisher] = None,
        metrics: Optional[CacheMetrics] = None,
        invalidation_timeout: timedelta = DEFAULT_INVALIDATION_TIMEOUT,
        enabled: bool = True,
    ):
        self.store = store
        self.scope = scope
        self.publisher = publisher
        self.metrics = metrics
        self.invalidation_timeout = invalidation_timeout
        self.enabled = enabled
        self.logger = get_logger("cache.interceptor.write")

    async def handle(self, request: Any, next: Next) -> Any:
        result = await next()

        policy = cache_policy_of(request)
        if not self.enabled or not isinstance(policy, InvalidatableDescriptor) or policy.is_empty:
            return result

        self.logger.debug(
            "Invalidating cache after command",
            request_type=type(request).__name__,
            keys=len(policy.keys),
            prefixes=len(policy.prefixes),
            tags=len(policy.tags)
        )

        try:
            await asyncio.wait_for(self._invalidate(policy), self.invalidation_timeout.total_seconds())
        except asyncio.TimeoutError:
            self.logger.warning(
                "Cache invalidation timed out",
                request_type=type(request).__name__,
                timeout_seconds=self.invalidation_timeout.total_seconds()
            )

        return result

    async def _invalidate(self, policy: InvalidatableDescriptor) -> None:
        for key in policy.keys:
            scoped = self.scope.scope(key)
            await self._step("remove", scoped, self.store.remove)
            if self.publisher is not None:
                await self._step("publish", scoped, self.publisher.publish)

        for prefix in policy.prefixes:
            scoped = self.scope.scope(prefix)
            await self._step("remove_by_prefix", scoped, self.store.remove_by_prefix)
            if self.publisher is not None:
                await self._step("publish_prefix", scoped, self.publisher.publish_prefix)

        for tag in policy.tags:
            scoped = self.scope.scope(tag)
            removed = await self._step("remove_by_tag", scoped, self.store.remove_by_tag)
            if self.publisher is not None:
                for key in removed or ():
                    await self._step("publish", key, self.publisher.publish)

    async def _step(self, operation: str, target: str, func: Callable[[str], Awaitable[Any]]) -> Any:
        try:
            return await func(target)
        except Exception as e:
            _report_store_failure(self.logger, self.metrics, operation, target, e)
            return None


class CachePipeline:
    """Both interceptors chained; dispatches on the request's cache policy."""

    def __init__(self, read: ReadInterceptor, write: WriteInterceptor):
        self.read = read
        self.write = write

    async def handle(self, request: Any, next: Next) -> Any:
        token = set_request_type(type(request).__name__)
        try:
            policy = cache_policy_of(request)
            if isinstance(policy, CacheableDescriptor):
                return await self.read.handle(request, next)
            if isinstance(policy, InvalidatableDescriptor):
                return await self.write.handle(request, next)
            return await next()
        finally:
            reset_request_type(token)
