"""
Cache store contract shared by every backend and decorator.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from shared.logging import get_logger


class ExpirationType(Enum):
    """How an entry's lifetime is measured."""
    ABSOLUTE = "absolute"
    SLIDING = "sliding"


@dataclass(frozen=True)
class CacheEntryOptions:
    """Expiration settings for a single entry."""

    expiration: timedelta
    expiration_type: ExpirationType = ExpirationType.ABSOLUTE
    tags: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def absolute(cls, expiration: timedelta, *tags: str) -> "CacheEntryOptions":
        return cls(expiration, ExpirationType.ABSOLUTE, tuple(tags))

    @classmethod
    def sliding(cls, expiration: timedelta, *tags: str) -> "CacheEntryOptions":
        return cls(expiration, ExpirationType.SLIDING, tuple(tags))

    @property
    def is_sliding(self) -> bool:
        return self.expiration_type is ExpirationType.SLIDING


Expiration = Union[timedelta, CacheEntryOptions, None]

DEFAULT_EXPIRATION = timedelta(minutes=60)


def resolve_options(expiration: Expiration, default: timedelta = DEFAULT_EXPIRATION) -> CacheEntryOptions:
    """Normalise the ``expiration`` argument accepted by ``set``."""
    if isinstance(expiration, CacheEntryOptions):
        return expiration
    return CacheEntryOptions.absolute(expiration if expiration is not None else default)


class CacheStore(ABC):
    """Asynchronous key-value cache.

    Implementations may raise ``shared.errors.CacheLayerException`` subclasses
    (or the circuit breaker's ``CircuitBreakerOpenException``) when the backend
    is unavailable; callers on the request path treat every such failure as a
    miss.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or ``None`` when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, expiration: Expiration = None) -> None:
        """Store ``value``; ``None`` values are ignored."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove one exact key."""

    @abstractmethod
    async def remove_by_prefix(self, prefix: str) -> int:
        """Remove every key that starts with ``prefix``; returns the count removed."""

    @abstractmethod
    async def refresh(self, key: str) -> None:
        """Restart the sliding window of an entry (no-op for absolute entries)."""

    async def ttl(self, key: str) -> Optional[timedelta]:
        """Time left before ``key`` expires.

        ``timedelta(0)`` when the key is absent, ``None`` when the store cannot
        tell or the entry never expires.
        """
        return None

    async def remove_by_tag(self, tag: str) -> List[str]:
        """Remove every entry stored with ``tag``; returns the removed keys.

        Stores without a tag index have nothing to remove.
        """
        return []

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        """Fetch several keys; missing keys map to ``None``."""
        return {key: await self.get(key) for key in keys}

    async def set_many(self, items: Mapping[str, Any], expiration: Expiration = None) -> None:
        """Store several values with the same expiration."""
        for key, value in items.items():
            await self.set(key, value, expiration)

    async def get_or_create(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        expiration: Expiration = None,
    ) -> Any:
        """Plain read-through without stampede protection.

        Store failures fall back to the factory; factory failures propagate.
        """
        logger = get_logger("cache.store")
        try:
            cached = await self.get(key)
        except Exception as exc:
            logger.warning("Cache read failed, falling back to source", key=key, error=str(exc))
            return await factory()

        if cached is not None:
            return cached

        value = await factory()
        try:
            await self.set(key, value, expiration)
        except Exception as exc:
            logger.warning("Cache write failed", key=key, error=str(exc))
        return value


class NoOpCacheStore(CacheStore):
    """Store used when caching is switched off: reads miss, writes vanish."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, expiration: Expiration = None) -> None:
        return None

    async def remove(self, key: str) -> None:
        return None

    async def remove_by_prefix(self, prefix: str) -> int:
        return 0

    async def refresh(self, key: str) -> None:
        return None

    async def ttl(self, key: str) -> Optional[timedelta]:
        return timedelta(0)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[Any]]:
        return {key: None for key in keys}

    async def set_many(self, items: Mapping[str, Any], expiration: Expiration = None) -> None:
        return None

    async def get_or_create(self, key, factory, expiration=None):
        return await factory()
