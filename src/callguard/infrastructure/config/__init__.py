"""Configuration loading for callguard."""

from .config_loader import ConfigLoader
from .config_models import (
    CallGuardConfig,
    CircuitBreakerConfigModel,
    LoggingConfig,
    RetryConfigModel,
    ServiceConfig,
)

__all__ = [
    "ConfigLoader",
    "CallGuardConfig",
    "CircuitBreakerConfigModel",
    "LoggingConfig",
    "RetryConfigModel",
    "ServiceConfig",
]
