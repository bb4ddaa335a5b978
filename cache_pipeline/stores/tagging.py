"""
Tag index for group invalidation.

Entries written with tagged ``CacheEntryOptions`` are recorded in one set per
tag (``tag:{tag}`` in Redis), so a whole group can be dropped at once::

    await store.set(key, dto, CacheEntryOptions.absolute(timedelta(minutes=10), "svc:v1:Dealer:7"))
    await store.remove_by_tag("svc:v1:Dealer:7")

Tags are matched exactly; callers scope them the same way they scope keys.
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from redis.exceptions import RedisError

from shared.errors import CacheUnavailableError
from shared.logging import get_logger
from .base import CacheEntryOptions, CacheStore, Expiration

TAG_PREFIX = "tag:"


class CacheTagService:
    """Maps tags to the cache keys stored under them."""

    async def add_tags(self, key: str, tags: Iterable[str], expiration: Optional[timedelta] = None) -> None:
        raise NotImplementedError

    async def get_keys_by_tag(self, tag: str) -> List[str]:
        raise NotImplementedError

    async def clear_tag(self, tag: str) -> None:
        raise NotImplementedError


class RedisCacheTagService(CacheTagService):
    """Tag sets kept in Redis next to the entries they index.

    A tag set expires no earlier than the longest-lived absolute entry added to
    it (``PEXPIRE ... NX`` then ``PEXPIRE ... GT``, Redis 7+). Sliding entries
    leave the set without an expiry.
    """

    def __init__(self, client):
        self.redis = client
        self.logger = get_logger("cache.tags.redis")

    async def add_tags(self, key: str, tags: Iterable[str], expiration: Optional[timedelta] = None) -> None:
        tags = list(tags)
        if not tags:
            return

        pipe = self.redis.pipeline(transaction=False)
        for tag in tags:
            name = TAG_PREFIX + tag
            pipe.sadd(name, key)
            if expiration is not None:
                px = max(1, int(expiration.total_seconds() * 1000))
                pipe.pexpire(name, px, nx=True)
                pipe.pexpire(name, px, gt=True)

        try:
            await pipe.execute()
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"Redis add_tags failed: {exc}", {"key": key}) from exc

        self.logger.debug("Tagged cache entry", key=key, tags=tags)

    async def get_keys_by_tag(self, tag: str) -> List[str]:
        try:
            members = await self.redis.smembers(TAG_PREFIX + tag)
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"Redis get_keys_by_tag failed: {exc}", {"tag": tag}) from exc
        return sorted(m.decode("utf-8") if isinstance(m, bytes) else m for m in members)

    async def clear_tag(self, tag: str) -> None:
        try:
            await self.redis.delete(TAG_PREFIX + tag)
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"Redis clear_tag failed: {exc}", {"tag": tag}) from exc


class LocalCacheTagService(CacheTagService):
    """In-process tag index for the process-local store."""

    def __init__(self):
        self._tags: Dict[str, Set[str]] = {}

    async def add_tags(self, key: str, tags: Iterable[str], expiration: Optional[timedelta] = None) -> None:
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)

    async def get_keys_by_tag(self, tag: str) -> List[str]:
        return sorted(self._tags.get(tag, ()))

    async def clear_tag(self, tag: str) -> None:
        self._tags.pop(tag, None)


class TaggedCacheStore(CacheStore):
    """Records entry tags on ``set`` and implements ``remove_by_tag``."""

    def __init__(self, inner: CacheStore, tag_service: CacheTagService):
        self.inner = inner
        self.tags = tag_service
        self.logger = get_logger("cache.store.tagged")

    async def get(self, key: str) -> Optional[Any]:
        return await self.inner.get(key)

    async def set(self, key: str, value: Any, expiration: Expiration = None) -> None:
        if value is None:
            return
        await self.inner.set(key, value, expiration)
        if isinstance(expiration, CacheEntryOptions) and expiration.tags:
            await self.tags.add_tags(
                key,
                expiration.tags,
                None if expiration.is_sliding else expiration.expiration,
            )

    async def remove(self, key: str) -> None:
        await self.inner.remove(key)

    async def remove_by_prefix(self, prefix: str) -> int:
        return await self.inner.remove_by_prefix(prefix)

    async def refresh(self, key: str) -> None:
        await self.inner.refresh(key)

    async def ttl(self, key: str) -> Optional[timedelta]:
        return await self.inner.ttl(key)

    async def remove_by_tag(self, tag: str) -> List[str]:
        keys = await self.tags.get_keys_by_tag(tag)
        for key in keys:
            await self.inner.remove(key)
        await self.tags.clear_tag(tag)

        self.logger.info("Removed cache entries by tag", tag=tag, count=len(keys))
        return keys

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        return await self.inner.get_many(keys)

    async def set_many(self, items: Mapping[str, Any], expiration: Expiration = None) -> None:
        for key, value in items.items():
            await self.set(key, value, expiration)
