"""
callguard Logging Infrastructure.

Provides centralized logging with:
- Dual output: Human-readable console + JSON file
- Optional daily log rotation with configurable retention
- Context fields (dependency, attempt, operation) merged into every record
- Singleton pattern for process-wide access

Design Decisions:
- Use Python's standard logging module
- Console: Human-readable for operators
- File: JSON lines for programmatic parsing
- Thread-safe singleton via threading.Lock
"""

import json
import logging
import logging.handlers
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .context import LogContext

LOGGER_NAME = "callguard"

# Attributes present on every LogRecord; anything else came from ``extra``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """
    Formats records as single-line JSON objects.

    Includes standard fields, every ``extra`` field, and exception
    details when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Console formatter.

    Format: YYYY-MM-DD HH:MM:SS - LEVEL - [dependency] message
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        dependency = getattr(record, "dependency", None)
        if dependency:
            head, sep, tail = text.partition(f"{record.levelname} - ")
            text = f"{head}{sep}[{dependency}] {tail}"
        return text


class CallGuardLogger:
    """
    Centralized logger for callguard.

    Singleton wrapper around the ``callguard`` stdlib logger. Every call
    merges the current LogContext into the record's ``extra`` fields.

    Example:
        >>> logger = CallGuardLogger.get_instance(level="DEBUG")
        >>> logger.warning("Retrying", extra={"attempt": 2})
    """

    _instance: Optional['CallGuardLogger'] = None
    _lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        level: str = "INFO",
        log_file: Optional[Path] = None,
        console: bool = True,
        rotation: str = "daily",
        retention_days: int = 30,
    ):
        """
        Initialize the logger and (re)install its handlers.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Path to JSON log file (optional)
            console: Enable console output on stderr
            rotation: "daily" for midnight rotation, "none" for a plain file
            retention_days: Rotated files to keep
        """
        numeric_level = getattr(logging, level.upper())

        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(numeric_level)
        self.logger.propagate = False

        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(numeric_level)
            console_handler.setFormatter(HumanReadableFormatter())
            self.logger.addHandler(console_handler)

        if log_file:
            log_file = Path(log_file)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            if rotation == "daily":
                file_handler = logging.handlers.TimedRotatingFileHandler(
                    filename=str(log_file),
                    when='midnight',
                    interval=1,
                    backupCount=retention_days,
                    encoding='utf-8'
                )
            else:
                file_handler = logging.FileHandler(str(log_file), encoding='utf-8')

            # File gets everything
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(JSONFormatter())
            self.logger.addHandler(file_handler)

    @classmethod
    def get_instance(
        cls,
        level: str = "INFO",
        log_file: Optional[Path] = None,
        console: bool = True,
        rotation: str = "daily",
        retention_days: int = 30,
    ) -> 'CallGuardLogger':
        """
        Get the singleton, creating it with the given settings on first use.

        Later calls return the existing instance unchanged; use
        ``configure`` to apply new settings.
        """
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(
                        level=level,
                        log_file=log_file,
                        console=console,
                        rotation=rotation,
                        retention_days=retention_days,
                    )
        return cls._instance

    @classmethod
    def configure(
        cls,
        level: str = "INFO",
        log_file: Optional[Path] = None,
        console: bool = True,
        rotation: str = "daily",
        retention_days: int = 30,
    ) -> 'CallGuardLogger':
        """Replace the singleton with one built from new settings."""
        with cls._lock:
            cls._instance = cls(
                level=level,
                log_file=log_file,
                console=console,
                rotation=rotation,
                retention_days=retention_days,
            )
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton and close its handlers (used by tests)."""
        with cls._lock:
            if cls._instance is not None:
                for handler in list(cls._instance.logger.handlers):
                    cls._instance.logger.removeHandler(handler)
                    handler.close()
            cls._instance = None

    def _merge_context(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        """Merge LogContext into kwargs['extra']; explicit extra wins."""
        context = LogContext.get_context()
        if not context:
            return kwargs

        kwargs = dict(kwargs)
        kwargs['extra'] = {**context, **kwargs.get('extra', {})}
        return kwargs

    def debug(self, message: str, **kwargs):
        kwargs = self._merge_context(kwargs)
        self.logger.debug(message, stacklevel=2, **kwargs)

    def info(self, message: str, **kwargs):
        kwargs = self._merge_context(kwargs)
        self.logger.info(message, stacklevel=2, **kwargs)

    def warning(self, message: str, **kwargs):
        kwargs = self._merge_context(kwargs)
        self.logger.warning(message, stacklevel=2, **kwargs)

    def error(self, message: str, **kwargs):
        kwargs = self._merge_context(kwargs)
        self.logger.error(message, stacklevel=2, **kwargs)

    def critical(self, message: str, **kwargs):
        kwargs = self._merge_context(kwargs)
        self.logger.critical(message, stacklevel=2, **kwargs)


def get_logger(name: str) -> logging.Logger:
    """
    Get a child of the ``callguard`` logger.

    Example:
        >>> logger = get_logger("payments")
        >>> logger.name
        'callguard.payments'
    """
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
