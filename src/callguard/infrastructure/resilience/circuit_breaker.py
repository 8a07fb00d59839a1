"""
Circuit Breaker pattern implementation.

Stops calling a failing operation once consecutive failures reach a
threshold, then admits a single trial call after a cooldown.

Concurrency tradeoff: each ``execute`` holds the breaker's lock across
the state check, the operation call and the state update. HALF_OPEN
therefore admits exactly one trial and concurrent callers queue behind
it, at the cost of one in-flight call per breaker.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ...domain.exceptions import CircuitOpenError
from ..logging import CallGuardLogger, logging_context

T = TypeVar("T")


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation, calls pass through
    OPEN = "open"            # Threshold reached, calls rejected
    HALF_OPEN = "half_open"  # Cooldown elapsed, next call is the trial


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """
    Configuration for circuit breaker behavior.

    Attributes:
        max_failures: Consecutive failures that open the circuit
        reset_timeout: Seconds an OPEN circuit rejects calls before a trial
    """
    max_failures: int = 3
    reset_timeout: float = 5.0

    def __post_init__(self):
        if self.max_failures < 0:
            raise ValueError(f"max_failures must be non-negative, got {self.max_failures}")
        if self.reset_timeout < 0:
            raise ValueError(f"reset_timeout must be non-negative, got {self.reset_timeout}")


class CircuitBreaker:
    """
    Circuit breaker guarding a single protected resource.

    The circuit opens on the failure that brings the consecutive failure
    count to ``max_failures``; with ``max_failures=0`` the first failure
    opens it. The OPEN -> HALF_OPEN transition is computed on demand when
    the breaker is next used or inspected.

    Example:
        >>> breaker = CircuitBreaker(max_failures=3, reset_timeout=5.0, name="quotes")
        >>> breaker.execute(fetch_quote)
    """

    def __init__(
        self,
        max_failures: int = 3,
        reset_timeout: float = 5.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_failures: Consecutive failures that open the circuit
            reset_timeout: Cooldown in seconds before a trial call
            name: Name of the protected resource (for logging)
            clock: Monotonic time source
        """
        self.name = name
        self.config = CircuitBreakerConfig(max_failures=max_failures, reset_timeout=reset_timeout)
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

        # Guards every field above; sync execute() also holds it across the call.
        self._lock = threading.Lock()
        # Serializes execute_async() callers for the whole call; rebuilt per event loop.
        self._async_lock: Optional[asyncio.Lock] = None
        self._async_lock_loop: Optional[asyncio.AbstractEventLoop] = None

        self.logger = CallGuardLogger.get_instance()

    @property
    def max_failures(self) -> int:
        return self.config.max_failures

    @property
    def reset_timeout(self) -> float:
        return self.config.reset_timeout

    @property
    def state(self) -> CircuitBreakerState:
        """Current state, moving OPEN to HALF_OPEN if the cooldown has elapsed."""
        with self._lock:
            self._maybe_half_open()
            return self._state

    def get_state(self) -> CircuitBreakerState:
        return self.state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        with self._lock:
            return self._last_failure_time

    def execute(self, operation: Callable[[], T]) -> T:
        """
        Run ``operation`` once under the breaker's protection.

        The breaker's lock is held while ``operation`` runs, so the
        operation must not call back into this breaker.

        Args:
            operation: Zero-argument callable

        Returns:
            Whatever ``operation`` returns

        Raises:
            CircuitOpenError: If the circuit is OPEN; ``operation`` is not called
            Exception: Any exception raised by ``operation``, unchanged
        """
        with self._lock:
            self._admit()
            try:
                result = operation()
            except Exception as e:
                self._on_failure(e)
                raise
            self._on_success()
            return result

    async def execute_async(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``operation()`` once under the breaker's protection.

        Async callers are serialized on an asyncio.Lock for the whole call;
        the thread lock is taken only around state reads and updates so
        the event loop is never blocked on it during the await.
        """
        async with self._lock_for_running_loop():
            with self._lock:
                self._admit()
            try:
                result = await operation()
            except Exception as e:
                with self._lock:
                    self._on_failure(e)
                raise
            with self._lock:
                self._on_success()
            return result

    def raise_if_open(self) -> None:
        """
        Raise CircuitOpenError if the circuit currently rejects calls.

        Lets a caller stop early, before waiting to retry against a
        circuit the last failure just opened.
        """
        with self._lock:
            self._admit()

    def reset(self):
        """Manually reset the circuit breaker to CLOSED state."""
        with self._lock:
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None

            with logging_context(operation="circuit_breaker_reset"):
                self.logger.info(
                    f"Circuit breaker manually reset: {self.name}",
                    extra={
                        "circuit_breaker": self.name,
                        "state": self._state.value
                    }
                )

    def protect(self, func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """
        Decorator protecting an async function with this breaker.

        Example:
            >>> @breaker.protect
            ... async def fetch(symbol):
            ...     return await client.get(symbol)
        """
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await self.execute_async(lambda: func(*args, **kwargs))

        return wrapper

    def protect_sync(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Decorator protecting a synchronous function with this breaker."""
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            return self.execute(lambda: func(*args, **kwargs))

        return wrapper

    def _lock_for_running_loop(self) -> asyncio.Lock:
        """
        asyncio.Lock for the running event loop.

        A lock binds to the first loop that waits on it, so a breaker
        reused by a later ``asyncio.run`` gets a fresh one. Async callers
        on different loops at the same time are not serialized.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._async_lock is None or self._async_lock_loop is not loop:
                self._async_lock = asyncio.Lock()
                self._async_lock_loop = loop
            return self._async_lock

    # State transitions below must be called with self._lock held.

    def _maybe_half_open(self) -> None:
        if self._state != CircuitBreakerState.OPEN:
            return
        if self._elapsed_since_failure() > self.config.reset_timeout:
            self._state = CircuitBreakerState.HALF_OPEN
            self._failure_count = 0

            with logging_context(operation="circuit_breaker_half_open"):
                self.logger.info(
                    f"Circuit breaker entering HALF_OPEN state: {self.name}",
                    extra={
                        "circuit_breaker": self.name,
                        "state": self._state.value,
                        "reset_timeout_seconds": self.config.reset_timeout
                    }
                )

    def _admit(self) -> None:
        """Raise CircuitOpenError unless the current state admits a call."""
        self._maybe_half_open()
        if self._state != CircuitBreakerState.OPEN:
            return

        retry_after = self.config.reset_timeout - self._elapsed_since_failure()
        with logging_context(operation="circuit_breaker_blocked"):
            self.logger.warning(
                f"Circuit breaker blocked call: {self.name}",
                extra={
                    "circuit_breaker": self.name,
                    "state": self._state.value,
                    "retry_after_seconds": round(max(retry_after, 0.0), 3)
                }
            )
        raise CircuitOpenError(self.name, retry_after)

    def _on_success(self) -> None:
        previous = self._state
        self._failure_count = 0
        self._state = CircuitBreakerState.CLOSED

        if previous == CircuitBreakerState.HALF_OPEN:
            with logging_context(operation="circuit_breaker_closed"):
                self.logger.info(
                    f"Circuit breaker closed (recovered): {self.name}",
                    extra={
                        "circuit_breaker": self.name,
                        "state": self._state.value
                    }
                )

    def _on_failure(self, exception: Exception) -> None:
        previous = self._state
        self._failure_count += 1
        self._last_failure_time = self._clock()

        # A failed trial always reopens; CLOSED opens at the threshold.
        if (previous != CircuitBreakerState.HALF_OPEN
                and self._failure_count < self.config.max_failures):
            return

        self._state = CircuitBreakerState.OPEN

        if previous == CircuitBreakerState.HALF_OPEN:
            with logging_context(operation="circuit_breaker_reopened"):
                self.logger.warning(
                    f"Circuit breaker reopened (recovery failed): {self.name}",
                    extra={
                        "circuit_breaker": self.name,
                        "state": self._state.value,
                        "error_type": type(exception).__name__
                    }
                )
        elif previous == CircuitBreakerState.CLOSED:
            with logging_context(operation="circuit_breaker_opened"):
                self.logger.error(
                    f"Circuit breaker opened (failure threshold reached): {self.name}",
                    extra={
                        "circuit_breaker": self.name,
                        "state": self._state.value,
                        "failure_count": self._failure_count,
                        "max_failures": self.config.max_failures,
                        "reset_timeout_seconds": self.config.reset_timeout,
                        "error_type": type(exception).__name__
                    }
                )

    def _elapsed_since_failure(self) -> float:
        if self._last_failure_time is None:
            return float("inf")
        return self._clock() - self._last_failure_time

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failures={self._failure_count}/{self.config.max_failures})"
        )
