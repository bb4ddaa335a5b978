"""
Cache-aside read/write interception for a request pipeline.

Read requests carrying a ``CacheableDescriptor`` are served from the cache and
populated on a miss under a distributed lock; write requests carrying an
``InvalidatableDescriptor`` drop stale entries locally and broadcast the
invalidation to other instances once their handler succeeds.
"""

from .effectiveness import EffectivenessTracker, EntityCacheStats
from .factory import CacheComponents, build_cache_pipeline
from .interceptors import CachePipeline, ReadInterceptor, WriteInterceptor
from .invalidation import (
    InvalidationPublisher,
    InvalidationSubscriber,
    RedisInvalidationPublisher,
    parse_invalidation_message,
)
from .keys import KeyScope, extract_entity_type
from .locking import (
    DistributedLock,
    LocalDistributedLock,
    LockHandle,
    NoOpDistributedLock,
    RedisDistributedLock,
)
from .requests import (
    Cacheable,
    CacheableDescriptor,
    CacheInvalidatable,
    InvalidatableDescriptor,
    cache_policy_of,
    cacheable,
    invalidates,
)
from .warmup import CacheWarmupService, CacheWarmupStrategy, LoaderWarmupStrategy

__all__ = [
    "EffectivenessTracker",
    "EntityCacheStats",
    "CacheComponents",
    "build_cache_pipeline",
    "CachePipeline",
    "ReadInterceptor",
    "WriteInterceptor",
    "InvalidationPublisher",
    "InvalidationSubscriber",
    "RedisInvalidationPublisher",
    "parse_invalidation_message",
    "KeyScope",
    "extract_entity_type",
    "DistributedLock",
    "LocalDistributedLock",
    "LockHandle",
    "NoOpDistributedLock",
    "RedisDistributedLock",
    "Cacheable",
    "CacheableDescriptor",
    "CacheInvalidatable",
    "InvalidatableDescriptor",
    "cache_policy_of",
    "cacheable",
    "invalidates",
    "CacheWarmupService",
    "CacheWarmupStrategy",
    "LoaderWarmupStrategy",
]
