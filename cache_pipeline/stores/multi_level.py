"""
Two-tier cache: a short-lived in-process L1 in front of a shared L2.

L1 absorbs repeated reads of hot keys on one instance; L2 stays the source of
truth across instances. An L1 copy never outlives the L2 entry it came from:
promotions are capped at the time L2 has left. Cross-instance staleness is
further bounded by the L1 TTL and by the invalidation subscriber removing keys
from both tiers.
"""

import time
from datetime import timedelta
from typing import Any, Optional

from shared.logging import get_logger
from shared.metrics import CacheMetrics
from .base import CacheStore, CacheEntryOptions, Expiration, resolve_options
from .memory_store import InMemoryCacheStore

DEFAULT_L1_EXPIRATION = timedelta(seconds=30)


class MultiLevelCacheStore(CacheStore):

    def __init__(
        self,
        l2: CacheStore,
        l1: Optional[InMemoryCacheStore] = None,
        l1_expiration: timedelta = DEFAULT_L1_EXPIRATION,
        metrics: Optional[CacheMetrics] = None,
    ):
        self.l1 = l1 if l1 is not None else InMemoryCacheStore(default_expiration=l1_expiration)
        self.l2 = l2
        self.l1_expiration = l1_expiration
        self.metrics = metrics
        self.logger = get_logger("cache.store.multi_level")

    def _l1_options(self, expiration: Expiration) -> CacheEntryOptions:
        options = resolve_options(expiration, self.l1_expiration)
        return CacheEntryOptions(
            min(options.expiration, self.l1_expiration),
            options.expiration_type,
            options.tags,
        )

    async def get(self, key: str) -> Optional[Any]:
        start = time.perf_counter()
        value = await self.l1.get(key)
        if value is not None:
            if self.metrics:
                self.metrics.record_hit(key, time.perf_counter() - start, "L1")
            return value

        if self.metrics:
            self.metrics.record_miss(key, time.perf_counter() - start, "L1")

        value = await self.l2.get(key)
        if value is not None:
            await self._promote(key, value)
        return value

    async def _promote(self, key: str, value: Any) -> None:
        remaining = await self.l2.ttl(key)
        lifetime = self.l1_expiration if remaining is None else min(self.l1_expiration, remaining)
        if lifetime <= timedelta(0):
            return
        await self.l1.set(key, value, lifetime)

    async def set(self, key: str, value: Any, expiration: Expiration = None) -> None:
        if value is None:
            return
        await self.l1.set(key, value, self._l1_options(expiration))
        await self.l2.set(key, value, expiration)

    async def remove(self, key: str) -> None:
        await self.l1.remove(key)
        await self.l2.remove(key)

    async def remove_by_prefix(self, prefix: str) -> int:
        local = await self.l1.remove_by_prefix(prefix)
        shared = await self.l2.remove_by_prefix(prefix)
        self.logger.debug("Removed prefix from both tiers", prefix=prefix, l1=local, l2=shared)
        return max(local, shared)

    async def refresh(self, key: str) -> None:
        await self.l1.refresh(key)
        await self.l2.refresh(key)

    async def ttl(self, key: str) -> Optional[timedelta]:
        return await self.l2.ttl(key)
