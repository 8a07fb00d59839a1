"""Configuration data models using Pydantic."""

from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CircuitBreakerConfigModel(BaseModel):
    """Circuit breaker configuration."""
    model_config = ConfigDict(extra="forbid")

    max_failures: int = Field(
        default=3,
        ge=0,
        description="Consecutive failures before opening the circuit (0 opens on first failure)"
    )
    reset_timeout: float = Field(
        default=5.0,
        ge=0.0,
        description="Seconds an open circuit waits before admitting a trial call"
    )


class RetryConfigModel(BaseModel):
    """Retry logic configuration."""
    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retry attempts after the first one"
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Fixed delay in seconds between attempts"
    )


class ServiceConfig(BaseModel):
    """Per-dependency overrides; unset sections fall back to the defaults."""
    model_config = ConfigDict(extra="forbid")

    retry: Optional[RetryConfigModel] = None
    circuit_breaker: Optional[CircuitBreakerConfigModel] = None


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(extra="forbid")

    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    file: Optional[str] = Field(
        default=None,
        description="JSON log file path (no file logging if unset)"
    )
    console: bool = Field(
        default=True,
        description="Enable console logging"
    )
    rotation: str = Field(
        default="daily",
        description="Log rotation strategy (daily, none)"
    )
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Number of days to retain logs"
    )

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return v

    @field_validator('rotation')
    @classmethod
    def validate_rotation(cls, v):
        """Ensure rotation strategy is valid."""
        valid_strategies = ["daily", "none"]
        v = v.lower()
        if v not in valid_strategies:
            raise ValueError(f"rotation must be one of {valid_strategies}")
        return v


class CallGuardConfig(BaseModel):
    """Complete callguard configuration."""
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    circuit_breaker: CircuitBreakerConfigModel = Field(default_factory=CircuitBreakerConfigModel)
    retry: RetryConfigModel = Field(default_factory=RetryConfigModel)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    services: Dict[str, ServiceConfig] = Field(
        default_factory=dict,
        description="Overrides keyed by dependency name"
    )

    def retry_for(self, name: str) -> RetryConfigModel:
        """Retry settings for a named dependency."""
        service = self.services.get(name)
        if service and service.retry:
            return service.retry
        return self.retry

    def circuit_breaker_for(self, name: str) -> CircuitBreakerConfigModel:
        """Circuit breaker settings for a named dependency."""
        service = self.services.get(name)
        if service and service.circuit_breaker:
            return service.circuit_breaker
        return self.circuit_breaker

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        import yaml
        return yaml.safe_dump(
            self.model_dump(exclude_none=True),
            default_flow_style=False,
            sort_keys=False
        )
