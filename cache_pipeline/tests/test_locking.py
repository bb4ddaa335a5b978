"""
Unit tests for distributed locks.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.errors import LockUnavailableError

from cache_pipeline.locking import (
    RELEASE_SCRIPT,
    LocalDistributedLock,
    LockHandle,
    NoOpDistributedLock,
    RedisDistributedLock,
)

EXPIRY = timedelta(seconds=10)


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestLockHandle:

    @pytest.mark.asyncio
    async def test_release_runs_once(self):
        release = AsyncMock()
        handle = LockHandle("lock:k", EXPIRY, release)

        await handle.release()
        await handle.release()

        release.assert_awaited_once()
        assert handle.released

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self):
        release = AsyncMock()

        with pytest.raises(RuntimeError):
            async with LockHandle("lock:k", EXPIRY, release):
                raise RuntimeError("handler failed")

        release.assert_awaited_once()


class TestLocalDistributedLock:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def lock(self, clock):
        return LocalDistributedLock(clock=clock)

    @pytest.mark.asyncio
    async def test_exclusive(self, lock):
        first = await lock.try_acquire("lock:k", EXPIRY)
        second = await lock.try_acquire("lock:k", EXPIRY)

        assert first is not None
        assert first.key == "lock:k"
        assert second is None

    @pytest.mark.asyncio
    async def test_reacquire_after_release(self, lock):
        async with await lock.try_acquire("lock:k", EXPIRY):
            assert lock.is_held("lock:k")

        assert not lock.is_held("lock:k")
        assert await lock.try_acquire("lock:k", EXPIRY) is not None

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken(self, lock, clock):
        await lock.try_acquire("lock:k", EXPIRY)
        clock.now += 11

        assert await lock.try_acquire("lock:k", EXPIRY) is not None

    @pytest.mark.asyncio
    async def test_stale_owner_cannot_release_new_owner(self, lock, clock):
        stale = await lock.try_acquire("lock:k", EXPIRY)
        clock.now += 11
        await lock.try_acquire("lock:k", EXPIRY)

        await stale.release()

        assert lock.is_held("lock:k")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, lock):
        assert await lock.try_acquire("lock:a", EXPIRY) is not None
        assert await lock.try_acquire("lock:b", EXPIRY) is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expiry", [timedelta(0), timedelta(seconds=-5)])
    async def test_invalid_expiry(self, lock, expiry):
        with pytest.raises(ValueError):
            await lock.try_acquire("lock:k", expiry)


class TestNoOpDistributedLock:

    @pytest.mark.asyncio
    async def test_always_acquires(self):
        lock = NoOpDistributedLock()
        assert await lock.try_acquire("lock:k", EXPIRY) is not None
        assert await lock.try_acquire("lock:k", EXPIRY) is not None

    @pytest.mark.asyncio
    async def test_invalid_expiry(self):
        with pytest.raises(ValueError):
            await NoOpDistributedLock().try_acquire("lock:k", timedelta(0))


class TestRedisDistributedLock:

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.set = AsyncMock(return_value=True)
        client.eval = AsyncMock(return_value=1)
        return client

    @pytest.fixture
    def lock(self, redis_client):
        return RedisDistributedLock(redis_client)

    @pytest.mark.asyncio
    async def test_acquire_uses_set_nx_px(self, lock, redis_client):
        handle = await lock.try_acquire("lock:svc:v1:User:1", EXPIRY)

        assert handle is not None
        args, kwargs = redis_client.set.call_args
        assert args[0] == "lock:svc:v1:User:1"
        assert kwargs == {"nx": True, "px": 10000}

    @pytest.mark.asyncio
    async def test_release_compare_and_delete(self, lock, redis_client):
        handle = await lock.try_acquire("lock:k", EXPIRY)
        token = redis_client.set.call_args[0][1]

        await handle.release()
        await handle.release()

        redis_client.eval.assert_awaited_once_with(RELEASE_SCRIPT, 1, "lock:k", token)

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, lock, redis_client):
        await lock.try_acquire("lock:k", EXPIRY)
        await lock.try_acquire("lock:k", EXPIRY)

        tokens = [c[0][1] for c in redis_client.set.call_args_list]
        assert tokens[0] != tokens[1]

    @pytest.mark.asyncio
    async def test_held_elsewhere(self, lock, redis_client):
        redis_client.set.return_value = None
        assert await lock.try_acquire("lock:k", EXPIRY) is None

    @pytest.mark.asyncio
    async def test_acquire_error_raises_lock_unavailable(self, lock, redis_client):
        redis_client.set.side_effect = ConnectionError("redis down")

        with pytest.raises(LockUnavailableError) as exc_info:
            await lock.try_acquire("lock:k", EXPIRY)

        assert exc_info.value.details == {"key": "lock:k"}

    @pytest.mark.asyncio
    async def test_release_error_is_swallowed(self, lock, redis_client):
        redis_client.eval.side_effect = ConnectionError("redis down")

        async with await lock.try_acquire("lock:k", EXPIRY):
            pass

        redis_client.eval.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_expiry(self, lock, redis_client):
        with pytest.raises(ValueError):
            await lock.try_acquire("lock:k", timedelta(milliseconds=-1))
        redis_client.set.assert_not_called()
