"""Dependency injection container for callguard."""

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ..config.config_loader import ConfigLoader
from ..config.config_models import CallGuardConfig
from ..logging import CallGuardLogger
from ..resilience import CircuitBreaker, RetryableService


@dataclass
class ResilienceContainer:
    """
    Owns one RetryableService (and its breaker) per protected dependency.

    Services are created lazily from the configuration the first time a
    dependency is named and the same instance is handed out afterwards,
    so every caller of a dependency shares its breaker. Create one
    container at application startup and pass it to whoever needs it.

    Example:
        >>> container = ResilienceContainer.create("callguard.yaml")
        >>> payments = container.service("payments")
        >>> payments.call_with_retry(ctx, charge)
    """

    config: CallGuardConfig
    logger: CallGuardLogger
    _services: Dict[str, RetryableService] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def create(cls, config_path: Optional[str] = None) -> "ResilienceContainer":
        """
        Load configuration, configure logging and build the container.

        Args:
            config_path: Optional path to configuration file
        """
        return cls.from_config(ConfigLoader.load(config_path))

    @classmethod
    def from_config(cls, config: CallGuardConfig) -> "ResilienceContainer":
        """Build the container from an already-loaded configuration."""
        log_config = config.logging
        logger = CallGuardLogger.configure(
            level=log_config.level,
            log_file=Path(log_config.file) if log_config.file else None,
            console=log_config.console,
            rotation=log_config.rotation,
            retention_days=log_config.retention_days,
        )
        return cls(config=config, logger=logger)

    def service(self, name: str) -> RetryableService:
        """Get (creating on first use) the service protecting dependency ``name``."""
        with self._lock:
            existing = self._services.get(name)
            if existing is not None:
                return existing

            breaker_config = self.config.circuit_breaker_for(name)
            retry_config = self.config.retry_for(name)

            breaker = CircuitBreaker(
                max_failures=breaker_config.max_failures,
                reset_timeout=breaker_config.reset_timeout,
                name=name,
            )
            service = RetryableService(
                max_retries=retry_config.max_retries,
                retry_delay=retry_config.retry_delay,
                circuit_breaker=breaker,
                name=name,
            )
            self._services[name] = service

        self.logger.debug(
            f"Created resilient service: {name}",
            extra={
                "dependency": name,
                "max_failures": breaker_config.max_failures,
                "reset_timeout_seconds": breaker_config.reset_timeout,
                "max_retries": retry_config.max_retries,
                "retry_delay_seconds": retry_config.retry_delay
            }
        )
        return service

    def breaker(self, name: str) -> CircuitBreaker:
        """Circuit breaker of dependency ``name``."""
        return self.service(name).circuit_breaker

    def states(self) -> Dict[str, str]:
        """Current breaker state of every dependency created so far."""
        with self._lock:
            services = dict(self._services)
        return {name: svc.get_state().value for name, svc in services.items()}
