"""Logging infrastructure for callguard."""

from .logger import CallGuardLogger, JSONFormatter, get_logger
from .context import LogContext, logging_context

__all__ = ["CallGuardLogger", "JSONFormatter", "get_logger", "LogContext", "logging_context"]
