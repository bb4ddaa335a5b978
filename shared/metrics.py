"""
Prometheus metrics for the cache pipeline layer.

Metrics live on an explicitly supplied ``CollectorRegistry`` rather than the
process-wide default one, so several pipelines (or test cases) can each own an
isolated set of series.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from typing import Dict, Any, Optional
import time
from contextlib import contextmanager

from shared.logging import get_logger


def key_prefix(key: str) -> str:
    """First segment of a cache key, used as a low-cardinality label.

    ``"company-svc:v1:User:42"`` -> ``"company-svc"``.
    """
    idx = key.find(":")
    return key[:idx] if idx > 0 else key


class CacheMetrics:
    """Centralized metrics collector for cache operations."""

    def __init__(self, service_name: str = "cache", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self.logger = get_logger("cache.metrics")
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache and entity metrics."""
        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Number of cache hits",
            ["key_prefix", "level"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Number of cache misses",
            ["key_prefix", "level"],
            registry=self.registry
        )

        self._metrics["cache_errors_total"] = Counter(
            "cache_errors_total",
            "Number of cache operation errors",
            ["key_prefix", "operation"],
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "cache_evictions_total",
            "Number of cache evictions (explicit removals)",
            ["key_prefix", "level"],
            registry=self.registry
        )

        self._metrics["cache_circuit_breaker_bypasses_total"] = Counter(
            "cache_circuit_breaker_bypasses_total",
            "Number of requests that bypassed cache due to open circuit breaker",
            registry=self.registry
        )

        self._metrics["cache_operation_duration_seconds"] = Histogram(
            "cache_operation_duration_seconds",
            "Cache operation duration in seconds",
            ["operation", "level"],
            registry=self.registry
        )

        self._setup_entity_metrics()

    def _setup_entity_metrics(self):
        """Set up entity-level effectiveness metrics."""
        self._metrics["cache_entity_hits_total"] = Counter(
            "cache_entity_hits_total",
            "Cache hits per entity type",
            ["entity"],
            registry=self.registry
        )

        self._metrics["cache_entity_misses_total"] = Counter(
            "cache_entity_misses_total",
            "Cache misses per entity type",
            ["entity"],
            registry=self.registry
        )

        self._metrics["cache_entity_latency_seconds"] = Histogram(
            "cache_entity_latency_seconds",
            "Cache operation latency per entity type",
            ["entity"],
            registry=self.registry
        )

        self._metrics["cache_entity_size_bytes"] = Histogram(
            "cache_entity_size_bytes",
            "Cached entity size in bytes",
            ["entity"],
            buckets=(128, 512, 1024, 4096, 16384, 65536, 262144, 1048576),
            registry=self.registry
        )

        self._metrics["cache_entity_hit_rate"] = Gauge(
            "cache_entity_hit_rate",
            "Cache hit rate by entity type (0.0 - 1.0)",
            ["entity"],
            registry=self.registry
        )

    def record_hit(self, key: str, duration: float, level: str = "L2"):
        """Record a cache hit; ``duration`` is in seconds."""
        self.increment_counter("cache_hits_total", key_prefix=key_prefix(key), level=level)
        self.observe_histogram("cache_operation_duration_seconds", duration, operation="hit", level=level)

    def record_miss(self, key: str, duration: float, level: str = "L2"):
        """Record a cache miss; ``duration`` is in seconds."""
        self.increment_counter("cache_misses_total", key_prefix=key_prefix(key), level=level)
        self.observe_histogram("cache_operation_duration_seconds", duration, operation="miss", level=level)

    def record_error(self, key: str, operation: str = "get"):
        """Record a cache operation error."""
        self.increment_counter("cache_errors_total", key_prefix=key_prefix(key), operation=operation)

    def record_eviction(self, key: str, level: str = "L2"):
        """Record an explicit removal."""
        self.increment_counter("cache_evictions_total", key_prefix=key_prefix(key), level=level)

    def record_circuit_breaker_bypass(self):
        """Record a request that skipped the cache because the breaker was open."""
        self._metrics["cache_circuit_breaker_bypasses_total"].inc()

    def record_entity_hit(self, entity: str, latency: float, size_bytes: int = 0):
        self.increment_counter("cache_entity_hits_total", entity=entity)
        self.observe_histogram("cache_entity_latency_seconds", latency, entity=entity)
        if size_bytes > 0:
            self.observe_histogram("cache_entity_size_bytes", size_bytes, entity=entity)

    def record_entity_miss(self, entity: str, latency: float):
        self.increment_counter("cache_entity_misses_total", entity=entity)
        self.observe_histogram("cache_entity_latency_seconds", latency, entity=entity)

    def set_entity_hit_rate(self, entity: str, hit_rate: float):
        self.set_gauge("cache_entity_hit_rate", hit_rate, entity=entity)

    @contextmanager
    def time_operation(self, operation: str, level: str = "L2"):
        """Context manager to time an arbitrary cache operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            self.observe_histogram("cache_operation_duration_seconds", duration, operation=operation, level=level)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)

    def sample_value(self, metric_name: str, **labels) -> float:
        """Current value of a counter/gauge series (0.0 when never touched)."""
        value = self.registry.get_sample_value(metric_name, labels or None)
        return value if value is not None else 0.0

    def export(self) -> bytes:
        """Prometheus text exposition of this collector's registry."""
        return generate_latest(self.registry)
