"""Resilience infrastructure for callguard."""

from .cancellation import CancellationContext
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
)
from .retry import RetryableService, RetryConfig

__all__ = [
    "CancellationContext",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "RetryableService",
    "RetryConfig",
]
