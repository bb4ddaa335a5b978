"""
Wiring of the cache pipeline from ``CacheSettings``.

With a Redis client the pipeline gets the shared Redis store, Redis locks and
pub/sub invalidation. Without one it runs process-local (in-memory store and
lock, no fan-out), which suits tests and single-instance tools. With caching
disabled every read misses and every write is dropped.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry

from shared.circuit_breaker import CircuitBreaker
from shared.config import CacheSettings
from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.metrics import CacheMetrics
from .effectiveness import EffectivenessTracker
from .interceptors import CachePipeline, ReadInterceptor, WriteInterceptor
from .invalidation import InvalidationPublisher, InvalidationSubscriber, RedisInvalidationPublisher
from .keys import KeyScope
from .locking import DistributedLock, LocalDistributedLock, RedisDistributedLock
from .stores.base import CacheStore, NoOpCacheStore
from .stores.compression import CompressedCacheStore
from .stores.memory_store import InMemoryCacheStore
from .stores.multi_level import MultiLevelCacheStore
from .stores.redis_store import RedisCacheStore
from .stores.serialization import BytesSerializer
from .stores.tagging import LocalCacheTagService, RedisCacheTagService, TaggedCacheStore
from .warmup import CacheWarmupService, CacheWarmupStrategy

logger = get_logger("cache.factory")


@dataclass
class CacheComponents:
    """Everything ``build_cache_pipeline`` created, for wiring and lifecycle."""

    settings: CacheSettings
    scope: KeyScope
    store: CacheStore
    lock: DistributedLock
    metrics: CacheMetrics
    tracker: Optional[EffectivenessTracker]
    breaker: CircuitBreaker
    publisher: Optional[InvalidationPublisher]
    subscriber: Optional[InvalidationSubscriber]
    read: ReadInterceptor
    write: WriteInterceptor
    pipeline: CachePipeline
    warmup: Optional[CacheWarmupService] = None

    async def start(self):
        if self.subscriber is not None:
            await self.subscriber.start()
        if self.warmup is not None:
            await self.warmup.run()

    async def stop(self):
        if self.subscriber is not None:
            await self.subscriber.stop()


def build_cache_pipeline(
    settings: CacheSettings,
    redis_client=None,
    registry: Optional[CollectorRegistry] = None,
    warmup_strategies: Iterable[CacheWarmupStrategy] = (),
) -> CacheComponents:
    """Assemble store, lock, publisher, metrics and interceptors.

    ``warmup_strategies`` run from ``CacheComponents.start`` when warm-up is
    enabled.
    """
    scope = KeyScope(settings.service_name, settings.cache_version)
    metrics = CacheMetrics(settings.service_name or "cache", registry)
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_breaker_failure_threshold,
        recovery_timeout=float(settings.circuit_breaker_break_duration_seconds),
        name=f"{settings.service_name or 'cache'}-redis",
        enabled=settings.circuit_breaker_enabled,
    )

    store = _build_store(settings, redis_client, breaker, metrics)

    publisher: Optional[InvalidationPublisher] = None
    subscriber: Optional[InvalidationSubscriber] = None
    if redis_client is not None:
        lock: DistributedLock = RedisDistributedLock(redis_client)
        if settings.enabled and settings.enable_invalidation_publisher:
            publisher = RedisInvalidationPublisher(redis_client, settings.invalidation_channel)
            subscriber = InvalidationSubscriber(redis_client, store, settings.invalidation_channel)
    else:
        lock = LocalDistributedLock()

    tracker = EffectivenessTracker(metrics, scope) if settings.enable_effectiveness_metrics else None

    strategies = list(warmup_strategies)
    warmup = None
    if settings.enabled and settings.enable_warmup and strategies:
        warmup = CacheWarmupService(store, scope, strategies, settings.warmup_concurrency)

    read = ReadInterceptor(
        store,
        scope,
        lock=lock,
        metrics=metrics,
        tracker=tracker,
        lock_expiry=settings.lock_expiry,
        lock_wait=settings.lock_wait,
        lock_retry_attempts=settings.lock_retry_attempts,
        enabled=settings.enabled,
        enable_logging=settings.enable_logging,
    )
    write = WriteInterceptor(
        store,
        scope,
        publisher=publisher,
        metrics=metrics,
        invalidation_timeout=settings.invalidation_timeout,
        enabled=settings.enabled,
    )

    logger.info(
        "Cache pipeline configured",
        scope=scope.prefix,
        backend="redis" if redis_client is not None else "memory",
        multi_level=settings.memory_cache_enabled,
        compression=settings.enable_compression,
        tagging=settings.enable_tagging,
        publisher=publisher is not None,
        warmup_strategies=len(strategies),
    )

    return CacheComponents(
        settings=settings,
        scope=scope,
        store=store,
        lock=lock,
        metrics=metrics,
        tracker=tracker,
        breaker=breaker,
        publisher=publisher,
        subscriber=subscriber,
        read=read,
        write=write,
        pipeline=CachePipeline(read, write),
        warmup=warmup,
    )


def _build_store(settings: CacheSettings, redis_client, breaker: CircuitBreaker, metrics: CacheMetrics) -> CacheStore:
    if not settings.enabled:
        return NoOpCacheStore()

    if redis_client is None:
        if settings.memory_cache_enabled:
            raise ConfigurationError(
                "The memory tier needs a shared Redis store behind it",
                {"memory_cache_enabled": True}
            )
        store: CacheStore = InMemoryCacheStore(
            size_limit=settings.memory_cache_size_limit,
            default_expiration=settings.default_expiration,
            metrics=metrics,
        )
    else:
        store = RedisCacheStore(
            redis_client,
            serializer=BytesSerializer() if settings.enable_compression else None,
            circuit_breaker=breaker,
            metrics=metrics,
            default_expiration=settings.default_expiration,
        )
        if settings.memory_cache_enabled:
            store = MultiLevelCacheStore(
                store,
                l1=InMemoryCacheStore(
                    size_limit=settings.memory_cache_size_limit,
                    default_expiration=settings.memory_cache_expiration,
                ),
                l1_expiration=settings.memory_cache_expiration,
                metrics=metrics,
            )

    if settings.enable_compression:
        store = CompressedCacheStore(store, settings.compression_threshold_bytes)
    if settings.enable_tagging:
        tags = RedisCacheTagService(redis_client) if redis_client is not None else LocalCacheTagService()
        store = TaggedCacheStore(store, tags)
    return store
