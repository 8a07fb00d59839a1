"""
callguard - Resilient call execution for unreliable operations.

Combines a circuit breaker state machine with a retrying,
cancellation-aware invoker.
"""

from .domain.exceptions import (
    CallGuardError,
    CircuitOpenError,
    CallCancelledError,
    RetriesExhaustedError,
    ContextCancelled,
)
from .infrastructure.resilience import (
    CircuitBreaker,
    CircuitBreakerState,
    RetryableService,
    CancellationContext,
)

__version__ = "1.0.0"

__all__ = [
    "CallGuardError",
    "CircuitOpenError",
    "CallCancelledError",
    "RetriesExhaustedError",
    "ContextCancelled",
    "CircuitBreaker",
    "CircuitBreakerState",
    "RetryableService",
    "CancellationContext",
]
