"""
Circuit breaker protecting the cache backend.

When the backing store keeps failing, the breaker opens and cache calls are
short-circuited so that requests go straight to their real handler instead of
waiting on a dead connection. After the recovery timeout one trial call is let
through (half-open); its outcome closes or re-opens the circuit.
"""

import threading
import time
from enum import Enum
from typing import Dict, Any, Callable, Awaitable, Tuple, Type

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenException(Exception):
    """Exception raised when circuit breaker is open."""
    pass


class CircuitBreaker:
    """Consecutive-failure circuit breaker."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 expected_exception: Tuple[Type[BaseException], ...] = (Exception,),
                 name: str = "cache",
                 enabled: bool = True,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.enabled = enabled
        self.logger = get_logger(f"circuit_breaker.{name}")

        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._success_count = 0
        self._trial_in_flight = False

    def _can_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt a reset."""
        return (self._clock() - self._last_failure_time) >= self.recovery_timeout

    def allow_request(self) -> bool:
        """Determine if a call should be attempted based on current state."""
        if not self.enabled:
            return True

        with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return True
            if self._state == CircuitBreakerState.OPEN:
                if self._can_attempt_reset():
                    self._state = CircuitBreakerState.HALF_OPEN
                    self._trial_in_flight = True
                    self.logger.info("Circuit breaker transitioning to half-open")
                    return True
                return False
            # HALF_OPEN: a single trial call at a time
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        if not self.allow_request():
            raise CircuitBreakerOpenException(
                f"Circuit breaker '{self.name}' is OPEN - blocking call"
            )

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self.record_failure()
            raise
        except BaseException:
            self._release_trial()
            raise

        self.record_success()
        return result

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    def record_success(self) -> None:
        """Reset the failure streak after a successful call."""
        with self._lock:
            self._trial_in_flight = False
            if self._state == CircuitBreakerState.HALF_OPEN:
                self.logger.info("Circuit breaker reset to CLOSED after successful call")
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._success_count += 1

    def record_failure(self) -> None:
        """Record a failure and update state."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._success_count = 0
            self._trial_in_flight = False

            if self._failure_count >= self.failure_threshold and self._state != CircuitBreakerState.OPEN:
                self._state = CircuitBreakerState.OPEN
                self.logger.warning(
                    "Circuit breaker opened due to failures",
                    failure_count=self._failure_count,
                    threshold=self.failure_threshold
                )

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        with self._lock:
            return {
                "name": self.name,
                "enabled": self.enabled,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "last_failure_time": self._last_failure_time,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout
            }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self.enabled and self._state == CircuitBreakerState.OPEN
