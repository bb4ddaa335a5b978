"""
Unit tests for the cache circuit breaker.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from shared.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenException,
    CircuitBreakerState,
)


class FakeClock:

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestCircuitBreaker:
    """Test cases for CircuitBreaker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def breaker(self, clock):
        return CircuitBreaker(failure_threshold=3, recovery_timeout=60.0, clock=clock)

    async def _fail(self, breaker, times):
        failing = AsyncMock(side_effect=ConnectionError("down"))
        for _ in range(times):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)

    @pytest.mark.asyncio
    async def test_closed_passes_calls(self, breaker):
        func = AsyncMock(return_value="ok")
        assert await breaker.call(func, 1, a=2) == "ok"
        func.assert_awaited_once_with(1, a=2)

    @pytest.mark.asyncio
    async def test_opens_after_consecutive_failures(self, breaker):
        await self._fail(breaker, 3)

        assert breaker.is_open()
        func = AsyncMock()
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(func)
        func.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_resets_streak(self, breaker):
        await self._fail(breaker, 2)
        await breaker.call(AsyncMock(return_value=1))
        await self._fail(breaker, 2)

        assert not breaker.is_open()

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, breaker, clock):
        await self._fail(breaker, 3)
        clock.now += 60

        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.get_state()["state"] == CircuitBreakerState.CLOSED.value

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, breaker, clock):
        await self._fail(breaker, 3)
        clock.now += 60
        await self._fail(breaker, 1)

        assert breaker.is_open()

    @pytest.mark.asyncio
    async def test_half_open_admits_single_trial(self, breaker, clock):
        await self._fail(breaker, 3)
        clock.now += 60

        gate = asyncio.Event()

        async def slow_trial():
            await gate.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)

        concurrent = AsyncMock(return_value="other")
        with pytest.raises(CircuitBreakerOpenException):
            await breaker.call(concurrent)
        concurrent.assert_not_called()

        gate.set()
        assert await trial == "ok"
        assert await breaker.call(concurrent) == "other"

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_slot(self, breaker, clock):
        await self._fail(breaker, 3)
        clock.now += 60

        trial = asyncio.create_task(breaker.call(asyncio.sleep, 10))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"

    @pytest.mark.asyncio
    async def test_disabled_never_opens(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, enabled=False, clock=clock)
        await self._fail(breaker, 5)

        assert not breaker.is_open()
        assert await breaker.call(AsyncMock(return_value=1)) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_not_counted(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, expected_exception=(ConnectionError,), clock=clock)

        with pytest.raises(ValueError):
            await breaker.call(AsyncMock(side_effect=ValueError("bad input")))

        assert not breaker.is_open()

    def test_state_snapshot(self, breaker):
        state = breaker.get_state()
        assert state["state"] == "closed"
        assert state["failure_threshold"] == 3
        assert state["recovery_timeout"] == 60.0
