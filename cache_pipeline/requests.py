"""
Cache policies carried by pipeline requests.

A request takes part in caching by exposing a ``cache_policy`` attribute:

- ``CacheableDescriptor`` for queries whose response may be served from cache,
- ``InvalidatableDescriptor`` for commands that make cached entries stale,
- ``None`` (or no attribute at all) for everything else.

The ``Cacheable`` and ``CacheInvalidatable`` mixins derive the policy from a
few plain properties, so request classes read like this::

    @dataclass
    class GetDealershipById(Cacheable):
        id: int

        @property
        def cache_key(self) -> str:
            return f"Dealership:{self.id}"

        cache_duration = timedelta(minutes=30)
        cache_response_type = DealershipDto

Declaring ``cache_response_type`` lets a hit rebuild the same type the
handler returned, even when the store holds plain JSON.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Optional, Sequence, Tuple, Union


@dataclass(frozen=True)
class CacheableDescriptor:
    """Read-side policy: cache the response under ``logical_key`` for ``duration``.

    ``response_type`` is what a cached payload is rebuilt as on a hit;
    ``tags`` group the entry for ``remove_by_tag``.
    """

    logical_key: str
    duration: timedelta
    response_type: Optional[Any] = None
    tags: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.logical_key:
            raise ValueError("Cacheable requests need a non-empty cache key")
        if self.duration <= timedelta(0):
            raise ValueError("Cache duration must be positive")
        object.__setattr__(self, "tags", tuple(self.tags))


@dataclass(frozen=True)
class InvalidatableDescriptor:
    """Write-side policy: exact keys, key prefixes and tags to drop after success."""

    keys: Tuple[str, ...] = field(default_factory=tuple)
    prefixes: Tuple[str, ...] = field(default_factory=tuple)
    tags: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "keys", tuple(self.keys))
        object.__setattr__(self, "prefixes", tuple(self.prefixes))
        object.__setattr__(self, "tags", tuple(self.tags))

    @property
    def is_empty(self) -> bool:
        return not self.keys and not self.prefixes and not self.tags


CachePolicy = Union[CacheableDescriptor, InvalidatableDescriptor, None]


class Cacheable:
    """Mixin for queries whose responses are cached."""

    cache_key: str
    cache_duration: timedelta
    cache_response_type: Optional[Any] = None
    cache_tags: Sequence[str] = ()

    @property
    def cache_policy(self) -> CacheableDescriptor:
        return CacheableDescriptor(
            self.cache_key,
            self.cache_duration,
            self.cache_response_type,
            tuple(self.cache_tags),
        )


class CacheInvalidatable:
    """Mixin for commands that invalidate cached entries once they succeed."""

    cache_keys_to_invalidate: Sequence[str] = ()
    cache_prefixes_to_invalidate: Sequence[str] = ()
    cache_tags_to_invalidate: Sequence[str] = ()

    @property
    def cache_policy(self) -> InvalidatableDescriptor:
        return InvalidatableDescriptor(
            tuple(self.cache_keys_to_invalidate),
            tuple(self.cache_prefixes_to_invalidate),
            tuple(self.cache_tags_to_invalidate),
        )


def cache_policy_of(request: Any) -> CachePolicy:
    """Resolve the request's cache policy, ``None`` when it does not take part."""
    return getattr(request, "cache_policy", None)


def cacheable(
    logical_key: str,
    duration: timedelta,
    response_type: Optional[Any] = None,
    tags: Iterable[str] = (),
) -> CacheableDescriptor:
    return CacheableDescriptor(logical_key, duration, response_type, tuple(tags))


def invalidates(
    keys: Iterable[str] = (),
    prefixes: Iterable[str] = (),
    tags: Iterable[str] = (),
) -> InvalidatableDescriptor:
    return InvalidatableDescriptor(tuple(keys), tuple(prefixes), tuple(tags))
