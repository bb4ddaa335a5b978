"""
Process-local cache store.

Used as the L1 tier of ``MultiLevelCacheStore`` and as a standalone backend for
single-instance deployments and tests. Values are kept as Python objects, so
no serialization happens on this path.
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Optional

from shared.logging import get_logger
from shared.metrics import CacheMetrics
from .base import CacheStore, Expiration, DEFAULT_EXPIRATION, resolve_options


@dataclass
class _Entry:
    value: Any
    expires_at: float
    sliding_window: Optional[float] = None


class InMemoryCacheStore(CacheStore):
    """Dictionary-backed store with absolute/sliding expiry and a size limit."""

    def __init__(
        self,
        size_limit: int = 1024,
        default_expiration=DEFAULT_EXPIRATION,
        metrics: Optional[CacheMetrics] = None,
        level: str = "L1",
        clock: Callable[[], float] = time.monotonic,
    ):
        if size_limit < 1:
            raise ValueError("size_limit must be at least 1")
        self.size_limit = size_limit
        self.default_expiration = default_expiration
        self.metrics = metrics
        self.level = level
        self.logger = get_logger("cache.store.memory")
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def keys(self):
        self._purge_expired()
        return list(self._entries.keys())

    async def get(self, key: str) -> Optional[Any]:
        start = time.perf_counter()
        entry = self._live_entry(key)
        if entry is None:
            if self.metrics:
                self.metrics.record_miss(key, time.perf_counter() - start, self.level)
            return None
        if entry.sliding_window is not None:
            entry.expires_at = self._clock() + entry.sliding_window
        if self.metrics:
            self.metrics.record_hit(key, time.perf_counter() - start, self.level)
        return entry.value

    async def set(self, key: str, value: Any, expiration: Expiration = None) -> None:
        if value is None:
            return

        options = resolve_options(expiration, self.default_expiration)
        window = options.expiration.total_seconds()
        self._entries.pop(key, None)
        self._entries[key] = _Entry(
            value=value,
            expires_at=self._clock() + window,
            sliding_window=window if options.is_sliding else None,
        )
        self._enforce_size_limit()

    async def remove(self, key: str) -> None:
        if self._entries.pop(key, None) is not None and self.metrics:
            self.metrics.record_eviction(key, self.level)

    async def remove_by_prefix(self, prefix: str) -> int:
        doomed = [key for key in self._entries if key.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
            if self.metrics:
                self.metrics.record_eviction(key, self.level)
        return len(doomed)

    async def refresh(self, key: str) -> None:
        entry = self._live_entry(key)
        if entry is not None and entry.sliding_window is not None:
            entry.expires_at = self._clock() + entry.sliding_window

    async def ttl(self, key: str) -> Optional[timedelta]:
        entry = self._live_entry(key)
        if entry is None:
            return timedelta(0)
        return timedelta(seconds=entry.expires_at - self._clock())

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        return {key: await self.get(key) for key in keys}

    async def clear(self) -> None:
        self._entries.clear()

    def _live_entry(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]

    def _enforce_size_limit(self) -> None:
        if len(self._entries) <= self.size_limit:
            return
        self._purge_expired()
        while len(self._entries) > self.size_limit:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            if self.metrics:
                self.metrics.record_eviction(oldest, self.level)
            self.logger.debug("Evicted oldest entry to honour size limit", key=oldest)
