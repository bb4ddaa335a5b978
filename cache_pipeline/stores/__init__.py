"""Cache store backends and decorators."""

from .base import (
    CacheStore,
    CacheEntryOptions,
    ExpirationType,
    NoOpCacheStore,
    resolve_options,
)
from .compression import CompressedCacheStore, compress_payload, decompress_payload
from .memory_store import InMemoryCacheStore
from .multi_level import MultiLevelCacheStore
from .redis_store import RedisCacheStore
from .serialization import BytesSerializer, JsonSerializer, restore
from .tagging import (
    CacheTagService,
    LocalCacheTagService,
    RedisCacheTagService,
    TaggedCacheStore,
)

__all__ = [
    "CacheStore",
    "CacheEntryOptions",
    "ExpirationType",
    "NoOpCacheStore",
    "resolve_options",
    "CompressedCacheStore",
    "compress_payload",
    "decompress_payload",
    "InMemoryCacheStore",
    "MultiLevelCacheStore",
    "RedisCacheStore",
    "BytesSerializer",
    "JsonSerializer",
    "restore",
    "CacheTagService",
    "LocalCacheTagService",
    "RedisCacheTagService",
    "TaggedCacheStore",
]
