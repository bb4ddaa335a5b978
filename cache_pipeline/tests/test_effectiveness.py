"""
Unit tests for the cache effectiveness tracker.
"""

import threading

import pytest

from shared.metrics import CacheMetrics
from cache_pipeline.effectiveness import EffectivenessTracker, EntityCacheStats
from cache_pipeline.keys import KeyScope


class TestEntityCacheStats:

    def test_hit_rate(self):
        stats = EntityCacheStats("User", 3, 1)
        assert stats.total_requests == 4
        assert stats.hit_rate == 0.75

    def test_zero_requests(self):
        assert EntityCacheStats("User", 0, 0).hit_rate == 0.0

    def test_str(self):
        assert str(EntityCacheStats("User", 1, 1)) == "User: 1/2 hits (50.0% hit rate)"


class TestEffectivenessTracker:

    @pytest.fixture
    def metrics(self):
        return CacheMetrics("test")

    @pytest.fixture
    def tracker(self, metrics):
        return EffectivenessTracker(metrics)

    def test_counts_by_entity_from_scoped_key(self, tracker):
        tracker.record_hit("company-svc:v1:Dealership:42", 1.5)
        tracker.record_hit("company-svc:v1:Dealership:7", 0.5)
        tracker.record_miss("company-svc:v1:Dealership:9", 3.0)

        stats = tracker.get_stats("Dealership")
        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(2 / 3)

    def test_entity_name_accepted_directly(self, tracker):
        tracker.record_miss("User", 1.0)
        assert tracker.get_stats("User").misses == 1

    def test_unknown_entity(self, tracker):
        stats = tracker.get_stats("Nothing")
        assert (stats.hits, stats.misses, stats.hit_rate) == (0, 0, 0.0)

    def test_get_all_stats(self, tracker):
        tracker.record_hit("svc:v1:User:1", 1.0)
        tracker.record_miss("svc:v1:Country:US", 1.0)

        assert [s.entity_type for s in tracker.get_all_stats()] == ["Country", "User"]

    def test_reset(self, tracker):
        tracker.record_hit("svc:v1:User:1", 1.0)
        tracker.reset()
        assert tracker.get_all_stats() == []

    def test_forwards_to_prometheus(self, tracker, metrics):
        tracker.record_hit("svc:v1:User:1", 2.0, size_bytes=512)
        tracker.record_miss("svc:v1:User:2", 4.0)

        assert metrics.sample_value("cache_entity_hits_total", entity="User") == 1.0
        assert metrics.sample_value("cache_entity_misses_total", entity="User") == 1.0
        assert metrics.sample_value("cache_entity_hit_rate", entity="User") == 0.5
        assert metrics.sample_value("cache_entity_size_bytes_count", entity="User") == 1.0
        assert metrics.sample_value("cache_entity_latency_seconds_sum", entity="User") == pytest.approx(0.006)

    def test_scope_aware_extraction(self):
        tracker = EffectivenessTracker(scope=KeyScope("", "v1"))
        tracker.record_hit("v1:User:7", 1.0)
        assert tracker.get_stats("User").hits == 1

    def test_concurrent_updates(self, tracker):
        def worker():
            for _ in range(200):
                tracker.record_hit("svc:v1:User:1", 0.1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.get_stats("User").hits == 1600
