"""
Retry logic with a fixed delay on top of a circuit breaker.

Every attempt goes through the service's CircuitBreaker. Ordinary
operation failures are retried after ``retry_delay``; an OPEN circuit
ends the loop at once; cancellation ends it before the next attempt or
in the middle of a delay.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ...domain.exceptions import (
    CallCancelledError,
    CircuitOpenError,
    RetriesExhaustedError,
)
from ..logging import CallGuardLogger, logging_context
from .cancellation import CancellationContext
from .circuit_breaker import CircuitBreaker

T = TypeVar("T")

DEFAULT_MAX_FAILURES = 3
DEFAULT_RESET_TIMEOUT = 5.0


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_retries: Retry attempts after the first one
        retry_delay: Fixed seconds to wait between attempts
    """
    max_retries: int = 3
    retry_delay: float = 1.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be non-negative, got {self.retry_delay}")


class RetryableService:
    """
    Retrying, cancellation-aware invoker that owns a circuit breaker.

    Safe to share between threads; concurrent calls are serialized by the
    breaker for the duration of each attempt.

    Example:
        >>> service = RetryableService(max_retries=3, retry_delay=0.5, name="quotes")
        >>> ctx = CancellationContext.with_timeout(10)
        >>> quote = service.call_with_retry(ctx, lambda: client.quote("ACME"))
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        name: str = "default",
    ):
        """
        Args:
            max_retries: Retry attempts after the first one
            retry_delay: Fixed delay in seconds between attempts
            circuit_breaker: Breaker to own; a new one with
                max_failures=3, reset_timeout=5s is created if omitted
            name: Name of the protected dependency (for logging)
        """
        self.config = RetryConfig(max_retries=max_retries, retry_delay=retry_delay)
        self.name = name
        self.circuit_breaker = circuit_breaker if circuit_breaker is not None else CircuitBreaker(
            max_failures=DEFAULT_MAX_FAILURES,
            reset_timeout=DEFAULT_RESET_TIMEOUT,
            name=name,
        )
        self.logger = CallGuardLogger.get_instance()

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    @property
    def retry_delay(self) -> float:
        return self.config.retry_delay

    def get_state(self):
        """State of the owned circuit breaker."""
        return self.circuit_breaker.get_state()

    def call_with_retry(
        self,
        ctx: Optional[CancellationContext],
        operation: Callable[[], T],
    ) -> T:
        """
        Call ``operation`` through the breaker, retrying ordinary failures.

        Args:
            ctx: Cancellation context, or None for a call that cannot be cancelled
            operation: Zero-argument callable

        Returns:
            The first successful result

        Raises:
            CallCancelledError: If ``ctx`` is done before an attempt or during a delay
            CircuitOpenError: If the breaker rejects an attempt
            RetriesExhaustedError: If all ``max_retries + 1`` attempts failed
        """
        attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            self._raise_if_cancelled(ctx, attempt)

            try:
                with logging_context(dependency=self.name, attempt=attempt + 1):
                    result = self.circuit_breaker.execute(operation)
            except CircuitOpenError:
                self._log_circuit_open(attempt)
                raise
            except Exception as e:
                last_error = e
                if attempt == self.config.max_retries:
                    break
                self._stop_if_circuit_opened(attempt)
                self._log_backoff(attempt, e)
                if ctx is not None:
                    if ctx.wait(self.config.retry_delay):
                        self._raise_cancelled(ctx, attempt + 1)
                else:
                    time.sleep(self.config.retry_delay)
                continue

            self._log_success(attempt)
            return result

        raise self._exhausted(attempts, last_error) from last_error

    async def call_with_retry_async(
        self,
        ctx: Optional[CancellationContext],
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Async rendition of ``call_with_retry`` for coroutine functions.

        The inter-retry delay races ``asyncio.sleep`` against the context.
        """
        attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            self._raise_if_cancelled(ctx, attempt)

            try:
                with logging_context(dependency=self.name, attempt=attempt + 1):
                    result = await self.circuit_breaker.execute_async(operation)
            except CircuitOpenError:
                self._log_circuit_open(attempt)
                raise
            except Exception as e:
                last_error = e
                if attempt == self.config.max_retries:
                    break
                self._stop_if_circuit_opened(attempt)
                self._log_backoff(attempt, e)
                if ctx is not None:
                    if await ctx.wait_async(self.config.retry_delay):
                        self._raise_cancelled(ctx, attempt + 1)
                else:
                    await asyncio.sleep(self.config.retry_delay)
                continue

            self._log_success(attempt)
            return result

        raise self._exhausted(attempts, last_error) from last_error

    def retrying(self, ctx: Optional[CancellationContext] = None):
        """
        Decorator factory routing calls through ``call_with_retry``.

        Coroutine functions are routed through ``call_with_retry_async``.

        Example:
            >>> @service.retrying()
            ... def fetch(symbol):
            ...     return client.quote(symbol)
        """
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            if inspect.iscoroutinefunction(func):
                @wraps(func)
                async def async_wrapper(*args, **kwargs) -> Any:
                    return await self.call_with_retry_async(ctx, lambda: func(*args, **kwargs))
                return async_wrapper

            @wraps(func)
            def wrapper(*args, **kwargs) -> Any:
                return self.call_with_retry(ctx, lambda: func(*args, **kwargs))
            return wrapper

        return decorator

    def _raise_if_cancelled(self, ctx: Optional[CancellationContext], attempt: int) -> None:
        if ctx is not None and ctx.done():
            self._raise_cancelled(ctx, attempt)

    def _raise_cancelled(self, ctx: CancellationContext, attempts_made: int) -> None:
        cause = ctx.cause
        with logging_context(operation="retry_cancelled", dependency=self.name):
            self.logger.warning(
                f"Call to {self.name} cancelled after {attempts_made} attempt(s)",
                extra={
                    "attempts_made": attempts_made,
                    "cause_type": type(cause).__name__ if cause else None
                }
            )
        raise CallCancelledError(cause) from cause

    def _stop_if_circuit_opened(self, attempt: int) -> None:
        """Raise CircuitOpenError instead of waiting if the last failure opened the circuit."""
        try:
            self.circuit_breaker.raise_if_open()
        except CircuitOpenError:
            self._log_circuit_open(attempt)
            raise

    def _log_backoff(self, attempt: int, error: Exception) -> None:
        with logging_context(operation="retry_backoff", dependency=self.name):
            self.logger.warning(
                f"Retrying {self.name} (attempt {attempt + 2}/{self.config.max_retries + 1})",
                extra={
                    "attempt": attempt + 2,
                    "max_attempts": self.config.max_retries + 1,
                    "delay_seconds": self.config.retry_delay,
                    "last_error": type(error).__name__
                }
            )

    def _log_success(self, attempt: int) -> None:
        if attempt == 0:
            return
        with logging_context(operation="retry_success", dependency=self.name):
            self.logger.info(
                f"Retry successful for {self.name}",
                extra={"successful_attempt": attempt + 1}
            )

    def _log_circuit_open(self, attempt: int) -> None:
        with logging_context(operation="retry_circuit_open", dependency=self.name):
            self.logger.warning(
                f"Circuit open for {self.name}; not retrying",
                extra={"attempt": attempt + 1}
            )

    def _exhausted(self, attempts: int, last_error: Exception) -> RetriesExhaustedError:
        with logging_context(operation="retry_exhausted", dependency=self.name):
            self.logger.error(
                f"All retry attempts exhausted for {self.name}",
                extra={
                    "total_attempts": attempts,
                    "error_type": type(last_error).__name__,
                    "error_message": str(last_error)
                }
            )
        return RetriesExhaustedError(attempts, last_error)
