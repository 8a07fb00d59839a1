"""
Cooperative cancellation for retrying callers.

A CancellationContext is a token the caller owns and hands to
RetryableService. The service checks it before every attempt and races
it against the inter-retry delay. Cancellation never interrupts an
operation that is already running.

Deadlines are evaluated lazily whenever the context is queried or
waited on; no timer thread is started.
"""

import asyncio
import threading
import time
from typing import Callable, List, Optional

from ...domain.exceptions import ContextCancelled
from ..logging import CallGuardLogger, logging_context

DoneCallback = Callable[["CancellationContext"], None]


class CancellationContext:
    """
    Cancellation token with an optional deadline and parent.

    Example:
        >>> ctx = CancellationContext.with_timeout(2.0)
        >>> service.call_with_retry(ctx, fetch_quote)
        >>> ctx.cancel()  # from any thread
    """

    def __init__(
        self,
        deadline: Optional[float] = None,
        parent: Optional["CancellationContext"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            deadline: Absolute time, on ``clock``'s scale, after which the
                context counts as done
            parent: Context whose cancellation also cancels this one
            clock: Monotonic time source
        """
        self._clock = clock
        self._deadline = deadline
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._cause: Optional[BaseException] = None
        self._callbacks: List[DoneCallback] = []
        self._parent = parent

        if parent is not None:
            if parent._deadline is not None:
                self._deadline = (
                    parent._deadline if self._deadline is None
                    else min(self._deadline, parent._deadline)
                )
            parent.add_done_callback(self._cancel_from_parent)

    @classmethod
    def with_timeout(
        cls,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CancellationContext":
        """Create a context that expires ``timeout`` seconds from now."""
        if timeout < 0:
            raise ValueError(f"timeout must be non-negative, got {timeout}")
        return cls(deadline=clock() + timeout, clock=clock)

    def child(self, timeout: Optional[float] = None) -> "CancellationContext":
        """Derive a context cancelled with this one, optionally with a tighter deadline."""
        deadline = None if timeout is None else self._clock() + timeout
        return CancellationContext(deadline=deadline, parent=self, clock=self._clock)

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cause(self) -> Optional[BaseException]:
        """Why the context is done, or None while it is live."""
        self._check_deadline()
        with self._lock:
            return self._cause

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(self._deadline - self._clock(), 0.0)

    def cancel(self, cause: Optional[BaseException] = None) -> bool:
        """
        Cancel the context.

        Idempotent: only the first call records its cause and runs the
        done callbacks. A callback that raises is logged and the rest
        still run. A cancelled child detaches from its parent.

        Returns:
            True if this call cancelled the context
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._cause = cause if cause is not None else ContextCancelled("context cancelled")
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        if self._parent is not None:
            self._parent.remove_done_callback(self._cancel_from_parent)

        for callback in callbacks:
            self._run_callback(callback)
        return True

    def done(self) -> bool:
        """True once cancelled or past the deadline."""
        self._check_deadline()
        return self._event.is_set()

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Run ``callback(ctx)`` once the context is done (immediately if it already is)."""
        self._check_deadline()
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def remove_done_callback(self, callback: DoneCallback) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the context is done or ``timeout`` elapses.

        Returns:
            True if the context is done
        """
        if self.done():
            return True

        limit = self._bound(timeout)
        self._event.wait(limit)
        return self.done()

    async def wait_async(self, timeout: Optional[float] = None) -> bool:
        """
        Await until the context is done or ``timeout`` elapses.

        Cancellation may come from another thread, so the wake-up is
        delivered to the loop with ``call_soon_threadsafe``.

        Returns:
            True if the context is done
        """
        if self.done():
            return True

        loop = asyncio.get_running_loop()
        fired = loop.create_future()

        def _wake(_ctx: "CancellationContext") -> None:
            loop.call_soon_threadsafe(_resolve, fired)

        self.add_done_callback(_wake)
        try:
            await asyncio.wait({fired}, timeout=self._bound(timeout))
        finally:
            self.remove_done_callback(_wake)
            if not fired.done():
                fired.cancel()
        return self.done()

    def _cancel_from_parent(self, parent: "CancellationContext") -> None:
        self.cancel(parent.cause)

    def _run_callback(self, callback: DoneCallback) -> None:
        try:
            callback(self)
        except Exception as e:
            with logging_context(operation="cancellation_callback_failed"):
                CallGuardLogger.get_instance().error(
                    f"Cancellation callback failed: {e}",
                    exc_info=True,
                    extra={
                        "callback": getattr(callback, "__qualname__", repr(callback)),
                        "error_type": type(e).__name__
                    }
                )

    def _bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp a wait timeout to the time left before the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def _check_deadline(self) -> None:
        if (
            self._deadline is not None
            and not self._event.is_set()
            and self._clock() >= self._deadline
        ):
            self.cancel(TimeoutError("context deadline exceeded"))

    def __repr__(self) -> str:
        state = "done" if self.done() else "live"
        return f"CancellationContext(state={state}, deadline={self._deadline})"


def _resolve(future: "asyncio.Future") -> None:
    if not future.done():
        future.set_result(None)
