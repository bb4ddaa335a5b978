"""
Tests for cache settings and pipeline wiring.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from shared.config import CacheSettings, get_settings
from shared.errors import ConfigurationError
from cache_pipeline.factory import build_cache_pipeline
from cache_pipeline.invalidation import InvalidationSubscriber, RedisInvalidationPublisher
from cache_pipeline.locking import LocalDistributedLock, RedisDistributedLock
from cache_pipeline.requests import cacheable
from cache_pipeline.stores.base import NoOpCacheStore
from cache_pipeline.stores.compression import CompressedCacheStore
from cache_pipeline.stores.memory_store import InMemoryCacheStore
from cache_pipeline.stores.multi_level import MultiLevelCacheStore
from cache_pipeline.stores.redis_store import RedisCacheStore
from cache_pipeline.stores.serialization import BytesSerializer
from cache_pipeline.stores.tagging import LocalCacheTagService, RedisCacheTagService, TaggedCacheStore
from cache_pipeline.warmup import LoaderWarmupStrategy


class TestCacheSettings:

    def test_defaults(self):
        settings = CacheSettings()

        assert settings.cache_version == "v1"
        assert settings.enabled is True
        assert settings.default_expiration == timedelta(minutes=60)
        assert settings.lock_expiry == timedelta(seconds=10)
        assert settings.lock_wait == timedelta(milliseconds=150)
        assert settings.invalidation_timeout == timedelta(seconds=5)
        assert settings.invalidation_channel == "cache:invalidation"
        assert settings.compression_threshold_bytes == 1024
        assert settings.circuit_breaker_failure_threshold == 5
        assert settings.circuit_breaker_break_duration_seconds == 60
        assert settings.memory_cache_expiration == timedelta(seconds=30)

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CACHE_SERVICE_NAME", "company-svc")
        monkeypatch.setenv("CACHE_ENABLE_COMPRESSION", "true")

        settings = get_settings()

        assert settings.service_name == "company-svc"
        assert settings.enable_compression is True

    def test_explicit_overrides(self):
        settings = get_settings("billing-svc", cache_version="v3")
        assert (settings.service_name, settings.cache_version) == ("billing-svc", "v3")

    @pytest.mark.parametrize("overrides", [
        {"circuit_breaker_failure_threshold": 0},
        {"circuit_breaker_break_duration_seconds": 1},
        {"default_expiration_minutes": 0},
        {"lock_expiry_seconds": 0},
        {"lock_wait_ms": 20000},
        {"cache_version": ""},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValidationError):
            CacheSettings(**overrides)


class TestBuildCachePipeline:

    @pytest.fixture
    def redis_client(self):
        return MagicMock()

    def test_process_local_wiring(self):
        components = build_cache_pipeline(CacheSettings(service_name="test-svc"))

        assert isinstance(components.store, InMemoryCacheStore)
        assert isinstance(components.lock, LocalDistributedLock)
        assert components.publisher is None
        assert components.subscriber is None
        assert components.scope.prefix == "test-svc:v1"
        assert components.write.publisher is None

    def test_redis_wiring(self, redis_client):
        components = build_cache_pipeline(CacheSettings(service_name="test-svc"), redis_client)

        assert isinstance(components.store, RedisCacheStore)
        assert components.store.breaker is components.breaker
        assert isinstance(components.lock, RedisDistributedLock)
        assert isinstance(components.publisher, RedisInvalidationPublisher)
        assert isinstance(components.subscriber, InvalidationSubscriber)
        assert components.write.publisher is components.publisher

    def test_publisher_disabled(self, redis_client):
        settings = CacheSettings(service_name="test-svc", enable_invalidation_publisher=False)
        components = build_cache_pipeline(settings, redis_client)

        assert components.publisher is None
        assert components.subscriber is None

    def test_compression_over_multi_level(self, redis_client):
        settings = CacheSettings(service_name="test-svc", enable_compression=True, memory_cache_enabled=True)
        components = build_cache_pipeline(settings, redis_client)

        store = components.store
        assert isinstance(store, CompressedCacheStore)
        assert isinstance(store.inner, MultiLevelCacheStore)
        assert isinstance(store.inner.l2, RedisCacheStore)
        assert isinstance(store.inner.l2.serializer, BytesSerializer)

    def test_memory_tier_requires_redis(self):
        with pytest.raises(ConfigurationError):
            build_cache_pipeline(CacheSettings(memory_cache_enabled=True))

    def test_effectiveness_can_be_disabled(self):
        components = build_cache_pipeline(CacheSettings(enable_effectiveness_metrics=False))
        assert components.tracker is None
        assert components.read.tracker is None

    def test_separate_pipelines_have_separate_metrics(self):
        a = build_cache_pipeline(CacheSettings(service_name="a"))
        b = build_cache_pipeline(CacheSettings(service_name="b"))
        assert a.metrics.registry is not b.metrics.registry

    @pytest.mark.asyncio
    async def test_pipeline_round_trip(self):
        components = build_cache_pipeline(CacheSettings(service_name="test-svc", enable_compression=True))
        handler = AsyncMock(return_value={"id": 1})

        class Query:
            cache_policy = cacheable("Entity:1", timedelta(minutes=5))

        assert await components.pipeline.handle(Query(), handler) == {"id": 1}
        assert await components.pipeline.handle(Query(), handler) == {"id": 1}
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lifecycle_starts_subscriber(self, redis_client):
        components = build_cache_pipeline(CacheSettings(service_name="test-svc"), redis_client)
        components.subscriber.start = AsyncMock()
        components.subscriber.stop = AsyncMock()

        await components.start()
        await components.stop()

        components.subscriber.start.assert_awaited_once()
        components.subscriber.stop.assert_awaited_once()

    def test_disabled_uses_noop_store(self, redis_client):
        components = build_cache_pipeline(CacheSettings(service_name="test-svc", enabled=False), redis_client)

        assert isinstance(components.store, NoOpCacheStore)
        assert components.publisher is None
        assert components.subscriber is None

    @pytest.mark.parametrize("with_redis,tag_service", [
        (False, LocalCacheTagService),
        (True, RedisCacheTagService),
    ])
    def test_tagging_wraps_outermost(self, redis_client, with_redis, tag_service):
        settings = CacheSettings(service_name="test-svc", enable_tagging=True, enable_compression=True)
        components = build_cache_pipeline(settings, redis_client if with_redis else None)

        assert isinstance(components.store, TaggedCacheStore)
        assert isinstance(components.store.tags, tag_service)
        assert isinstance(components.store.inner, CompressedCacheStore)

    @pytest.mark.asyncio
    async def test_compressed_redis_round_trip(self):
        redis_client = FakeRedis()
        settings = CacheSettings(service_name="test-svc", enable_compression=True, compression_threshold_bytes=16)
        components = build_cache_pipeline(settings, redis_client)
        handler = AsyncMock(return_value={"id": 1, "name": "x" * 64})

        class Query:
            cache_policy = cacheable("Entity:1", timedelta(minutes=5))

        first = await components.pipeline.handle(Query(), handler)
        second = await components.pipeline.handle(Query(), handler)

        assert first == second == {"id": 1, "name": "x" * 64}
        handler.assert_awaited_once()
        assert redis_client.data["test-svc:v1:Entity:1"].startswith(b"GZIP:")

    @pytest.mark.asyncio
    async def test_start_runs_warmup(self):
        loader = AsyncMock(return_value=["AT", "DE"])
        components = build_cache_pipeline(
            CacheSettings(service_name="test-svc"),
            warmup_strategies=[LoaderWarmupStrategy("Countries", loader, timedelta(hours=1))],
        )

        await components.start()

        assert await components.store.get("test-svc:v1:Countries") == ["AT", "DE"]

    def test_warmup_can_be_disabled(self):
        strategy = LoaderWarmupStrategy("Countries", AsyncMock(), timedelta(hours=1))
        components = build_cache_pipeline(CacheSettings(enable_warmup=False), warmup_strategies=[strategy])
        assert components.warmup is None


class FakeRedis:
    """Stores what ``RedisCacheStore`` writes through its pipelines."""

    def __init__(self):
        self.data = {}

    async def mget(self, keys):
        return [self.data.get(key) for key in keys]

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.data.get(key) == token:
            del self.data[key]
            return 1
        return 0

    def pipeline(self, transaction=False):
        pipe = MagicMock()
        ops = []
        pipe.set.side_effect = lambda key, value, px=None: ops.append((key, value))
        pipe.delete.side_effect = lambda *keys: None

        async def execute():
            for key, value in ops:
                self.data[key] = value
            return [True] * len(ops)

        pipe.execute = execute
        return pipe
