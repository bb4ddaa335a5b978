"""
Distributed locks used for cache stampede protection.

``try_acquire`` never blocks: it returns a ``LockHandle`` when the lock was
taken and ``None`` when another owner holds it. A lock provider that cannot be
reached raises ``LockUnavailableError``.
Locks always carry a finite expiry so a crashed owner cannot wedge a key.
"""

import math
import time
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from shared.errors import LockUnavailableError
from shared.logging import get_logger

# Delete only when the stored token is ours
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def _validate_expiry(expiry: timedelta) -> float:
    seconds = expiry.total_seconds()
    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError("Lock expiry must be positive and finite")
    return seconds


class LockHandle:
    """Ownership of an acquired lock; release happens exactly once."""

    def __init__(self, key: str, expiry: timedelta, release: Optional[Callable[[], Awaitable[None]]] = None):
        self.key = key
        self.expiry = expiry
        self._release = release
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._release is not None:
            await self._release()

    async def __aenter__(self) -> "LockHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class DistributedLock:
    """Lock provider interface."""

    async def try_acquire(self, key: str, expiry: timedelta) -> Optional[LockHandle]:
        raise NotImplementedError


class RedisDistributedLock(DistributedLock):
    """``SET key token NX PX expiry`` with a compare-and-delete release."""

    def __init__(self, client):
        self.redis = client
        self.logger = get_logger("cache.lock.redis")

    async def try_acquire(self, key: str, expiry: timedelta) -> Optional[LockHandle]:
        seconds = _validate_expiry(expiry)
        token = f"{uuid.uuid4().hex}:{int(time.time() * 1000)}"

        try:
            acquired = await self.redis.set(key, token, nx=True, px=max(1, int(seconds * 1000)))
        except (RedisError, OSError) as e:
            raise LockUnavailableError(f"Failed to acquire distributed lock: {e}", {"key": key}) from e

        if not acquired:
            return None

        async def release() -> None:
            try:
                await self.redis.eval(RELEASE_SCRIPT, 1, key, token)
            except Exception as e:
                self.logger.warning("Failed to release distributed lock", key=key, error=str(e))

        return LockHandle(key, expiry, release)


class LocalDistributedLock(DistributedLock):
    """In-process lock table with the same expiry semantics as the Redis lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._held: Dict[str, Tuple[str, float]] = {}

    def is_held(self, key: str) -> bool:
        entry = self._held.get(key)
        return entry is not None and entry[1] > self._clock()

    async def try_acquire(self, key: str, expiry: timedelta) -> Optional[LockHandle]:
        seconds = _validate_expiry(expiry)
        if self.is_held(key):
            return None

        token = uuid.uuid4().hex
        self._held[key] = (token, self._clock() + seconds)

        async def release() -> None:
            entry = self._held.get(key)
            if entry is not None and entry[0] == token:
                del self._held[key]

        return LockHandle(key, expiry, release)


class NoOpDistributedLock(DistributedLock):
    """Always acquires; disables stampede protection."""

    async def try_acquire(self, key: str, expiry: timedelta) -> Optional[LockHandle]:
        _validate_expiry(expiry)
        return LockHandle(key, expiry)
