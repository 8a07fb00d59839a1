"""Domain exceptions for callguard."""

from typing import Optional


class CallGuardError(Exception):
    """Base exception for errors raised by the resilience layer itself."""
    pass


class CircuitOpenError(CallGuardError):
    """
    Raised when a circuit breaker is OPEN and rejects a call.

    The wrapped operation was not invoked.

    Attributes:
        breaker_name: Name of the breaker that rejected the call
        retry_after: Seconds until the breaker will admit a trial call
    """

    def __init__(self, breaker_name: str, retry_after: float):
        self.breaker_name = breaker_name
        self.retry_after = max(retry_after, 0.0)
        super().__init__(
            f"Circuit breaker is OPEN for {breaker_name}. "
            f"Service unavailable. Will retry after {self.retry_after:.2f}s."
        )


class CallCancelledError(CallGuardError):
    """
    Raised when the caller's cancellation context fired before an
    attempt or during an inter-retry wait.

    Attributes:
        cause: The cancellation context's cause
    """

    def __init__(self, cause: Optional[BaseException]):
        self.cause = cause
        reason = str(cause) if cause is not None else "cancelled"
        super().__init__(f"Call cancelled: {reason}")


class RetriesExhaustedError(CallGuardError):
    """
    Raised when every attempt failed.

    Attributes:
        attempts: Number of attempts made
        last_error: Exception raised by the final attempt
    """

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All {attempts} attempt(s) failed; last error: "
            f"{type(last_error).__name__}: {last_error}"
        )


class ContextCancelled(CallGuardError):
    """Default cause recorded by a cancellation context cancelled by its owner."""
    pass
