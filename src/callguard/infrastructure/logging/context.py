"""
Logging context management for callguard.

Stores correlation fields (dependency name, attempt number, operation)
that are merged into every log record emitted within the context.

Design:
- Backed by a ContextVar so fields are isolated per thread AND per
  asyncio task; a retry loop running in one task never leaks its
  fields into another task sharing the same thread
- The stored mapping is replaced, never mutated in place
- Context manager interface for automatic cleanup

Example:
    >>> with logging_context(dependency="payments", attempt=2):
    ...     logger.info("Calling dependency")  # Includes both fields
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Mapping

_context: ContextVar[Mapping[str, Any]] = ContextVar("callguard_log_context", default={})


class LogContext:
    """
    Per-thread, per-task storage for logging context fields.

    Example:
        >>> LogContext.set("dependency", "payments")
        >>> LogContext.get_context()
        {'dependency': 'payments'}
    """

    @classmethod
    def get_context(cls) -> Dict[str, Any]:
        """Return a copy of the current context fields."""
        return dict(_context.get())

    @classmethod
    def set(cls, key: str, value: Any) -> None:
        """Set a single context field."""
        cls.update({key: value})

    @classmethod
    def update(cls, fields: Mapping[str, Any]) -> None:
        """Add or overwrite several context fields at once."""
        _context.set({**_context.get(), **fields})

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """Get a specific context field, or ``default`` if unset."""
        return _context.get().get(key, default)

    @classmethod
    def clear(cls) -> None:
        """Clear all context fields for the current thread/task."""
        _context.set({})

    @classmethod
    def remove(cls, *keys: str) -> None:
        """Remove specific context fields."""
        current = _context.get()
        if not any(key in current for key in keys):
            return
        _context.set({k: v for k, v in current.items() if k not in keys})


@contextmanager
def logging_context(**fields):
    """
    Set context fields for the duration of a ``with`` block.

    On exit the context is restored to exactly what it was on entry, so
    nested blocks that shadow an outer field give the outer value back.

    Example:
        >>> with logging_context(dependency="payments"):
        ...     with logging_context(operation="retry_backoff"):
        ...         pass  # both fields present
        ...     # only dependency remains
    """
    token = _context.set({**_context.get(), **fields})
    try:
        yield
    finally:
        _context.reset(token)
