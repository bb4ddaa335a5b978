"""
Per-entity cache effectiveness: hit/miss counts and hit rate by entity type.
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from shared.logging import get_logger
from shared.metrics import CacheMetrics
from .keys import KeyScope, extract_entity_type


@dataclass(frozen=True)
class EntityCacheStats:
    """Snapshot of one entity type's counters."""

    entity_type: str
    hits: int
    misses: int

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        return self.hits / total if total > 0 else 0.0

    def __str__(self) -> str:
        return f"{self.entity_type}: {self.hits}/{self.total_requests} hits ({self.hit_rate:.1%} hit rate)"


class EffectivenessTracker:
    """Thread-safe hit/miss counters keyed by entity type.

    Accepts either an entity type (``"User"``) or a full cache key
    (``"company-svc:v1:User:42"``); keys are reduced to their entity type.
    When a ``CacheMetrics`` is supplied every observation is also exported as
    Prometheus entity metrics.
    """

    def __init__(self, metrics: Optional[CacheMetrics] = None, scope: Optional[KeyScope] = None):
        self.metrics = metrics
        self.scope = scope
        self.logger = get_logger("cache.effectiveness")
        self._lock = threading.Lock()
        self._counts: Dict[str, List[int]] = {}

    def entity_type(self, entity_or_key: str) -> str:
        return extract_entity_type(entity_or_key, self.scope)

    def record_hit(self, entity_or_key: str, duration_ms: float, size_bytes: int = 0) -> None:
        entity = self.entity_type(entity_or_key)
        hit_rate = self._update(entity, hit=True)
        if self.metrics:
            self.metrics.record_entity_hit(entity, duration_ms / 1000.0, size_bytes)
            self.metrics.set_entity_hit_rate(entity, hit_rate)

    def record_miss(self, entity_or_key: str, duration_ms: float) -> None:
        entity = self.entity_type(entity_or_key)
        hit_rate = self._update(entity, hit=False)
        if self.metrics:
            self.metrics.record_entity_miss(entity, duration_ms / 1000.0)
            self.metrics.set_entity_hit_rate(entity, hit_rate)

    def _update(self, entity: str, hit: bool) -> float:
        with self._lock:
            counts = self._counts.setdefault(entity, [0, 0])
            counts[0 if hit else 1] += 1
            hits, misses = counts
        return hits / (hits + misses)

    def get_stats(self, entity_type: str) -> EntityCacheStats:
        with self._lock:
            hits, misses = self._counts.get(entity_type, (0, 0))
        return EntityCacheStats(entity_type, hits, misses)

    def get_all_stats(self) -> List[EntityCacheStats]:
        with self._lock:
            snapshot = [(entity, counts[0], counts[1]) for entity, counts in self._counts.items()]
        return [EntityCacheStats(entity, hits, misses) for entity, hits, misses in sorted(snapshot)]

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
        self.logger.info("Cache effectiveness counters reset")
