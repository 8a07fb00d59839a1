"""
Tests for circuit breaker pattern.

Covers the threshold boundary, lazy half-open transition, single-trial
recovery and thread safety.
"""

import asyncio
import threading
import time

import pytest

from callguard.domain.exceptions import CircuitOpenError
from callguard.infrastructure.resilience import (
    CircuitBreaker,
    CircuitBreakerState,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def fail():
    raise ConnectionError("Service unavailable")


def succeed():
    return "success"


class TestCircuitBreaker:
    """Test suite for circuit breaker."""

    def test_closed_state_allows_calls(self):
        """Test that CLOSED state passes calls and results through."""
        breaker = CircuitBreaker(max_failures=3, reset_timeout=5.0)

        assert breaker.execute(succeed) == "success"
        assert breaker.get_state() == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 0

    def test_operation_error_passes_through_unchanged(self):
        """Test that the operation's own exception object reaches the caller."""
        breaker = CircuitBreaker(max_failures=3, reset_timeout=5.0)
        original = ConnectionError("boom")

        def raise_original():
            raise original

        with pytest.raises(ConnectionError) as exc_info:
            breaker.execute(raise_original)

        assert exc_info.value is original
        assert breaker.failure_count == 1
        assert breaker.last_failure_time is not None

    def test_threshold_boundary_opens_on_reaching_max_failures(self):
        """Test max_failures=2: 2nd failure opens, 3rd call is rejected without running."""
        breaker = CircuitBreaker(max_failures=2, reset_timeout=0.1)
        call_count = 0

        def failing_call():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("Fail")

        with pytest.raises(ConnectionError):
            breaker.execute(failing_call)
        assert breaker.state == CircuitBreakerState.CLOSED

        with pytest.raises(ConnectionError):
            breaker.execute(failing_call)
        assert breaker.state == CircuitBreakerState.OPEN

        with pytest.raises(CircuitOpenError):
            breaker.execute(failing_call)

        assert call_count == 2, "Operation must not run while the circuit is open"

    def test_zero_max_failures_opens_on_first_failure(self):
        """Test that max_failures=0 opens the circuit on the very first failure."""
        breaker = CircuitBreaker(max_failures=0, reset_timeout=60)

        with pytest.raises(ConnectionError):
            breaker.execute(fail)

        assert breaker.state == CircuitBreakerState.OPEN

    @pytest.mark.parametrize("max_failures", [1, 3, 7])
    def test_never_more_than_max_failures_consecutive_calls(self, max_failures):
        """Test that an always-failing operation runs exactly max_failures times."""
        breaker = CircuitBreaker(max_failures=max_failures, reset_timeout=60)
        calls = []

        def failing_call():
            calls.append(1)
            raise ConnectionError("Fail")

        for _ in range(max_failures + 5):
            with pytest.raises((ConnectionError, CircuitOpenError)):
                breaker.execute(failing_call)

        assert len(calls) == max_failures
        assert breaker.state == CircuitBreakerState.OPEN

    def test_open_error_reports_breaker_and_retry_after(self):
        """Test that CircuitOpenError names the breaker and the remaining cooldown."""
        clock = FakeClock()
        breaker = CircuitBreaker(max_failures=1, reset_timeout=10, name="quotes", clock=clock)

        with pytest.raises(ConnectionError):
            breaker.execute(fail)
        clock.advance(4)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.execute(succeed)

        assert exc_info.value.breaker_name == "quotes"
        assert exc_info.value.retry_after == pytest.approx(6.0)

    def test_half_open_only_after_timeout_strictly_elapsed(self):
        """Test that OPEN -> HALF_OPEN needs elapsed time greater than reset_timeout."""
        clock = FakeClock()
        breaker = CircuitBreaker(max_failures=1, reset_timeout=5, clock=clock)

        with pytest.raises(ConnectionError):
            breaker.execute(fail)

        clock.advance(5)
        assert breaker.state == CircuitBreakerState.OPEN

        clock.advance(0.001)
        assert breaker.state == CircuitBreakerState.HALF_OPEN
        assert breaker.failure_count == 0

    def test_half_open_success_closes_circuit(self):
        """Test recovery scenario: wait past the timeout, succeed, observe CLOSED."""
        breaker = CircuitBreaker(max_failures=2, reset_timeout=0.1)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.execute(fail)
        assert breaker.state == CircuitBreakerState.OPEN

        time.sleep(0.15)

        assert breaker.execute(succeed) == "success"
        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens_and_refreshes_cooldown(self):
        """Test that a failed trial reopens even when max_failures is larger than one."""
        clock = FakeClock()
        breaker = CircuitBreaker(max_failures=3, reset_timeout=5, clock=clock)

        for _ in range(3):
            with pytest.raises(ConnectionError):
                breaker.execute(fail)
        first_failure_time = breaker.last_failure_time

        clock.advance(6)
        with pytest.raises(ConnectionError):
            breaker.execute(fail)

        assert breaker.state == CircuitBreakerState.OPEN
        assert breaker.last_failure_time == first_failure_time + 6

        # Cooldown restarted from the trial failure
        clock.advance(3)
        with pytest.raises(CircuitOpenError):
            breaker.execute(succeed)

    def test_success_resets_failure_count(self):
        """Test that a success between failures keeps the circuit CLOSED."""
        breaker = CircuitBreaker(max_failures=3, reset_timeout=60)

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.execute(fail)
        assert breaker.failure_count == 2

        breaker.execute(succeed)
        assert breaker.failure_count == 0

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.execute(fail)

        assert breaker.state == CircuitBreakerState.CLOSED

    def test_reset_clears_state(self):
        """Test that reset() forces CLOSED and clears counters."""
        breaker = CircuitBreaker(max_failures=1, reset_timeout=60)

        with pytest.raises(ConnectionError):
            breaker.execute(fail)
        assert breaker.state == CircuitBreakerState.OPEN

        breaker.reset()

        assert breaker.state == CircuitBreakerState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.last_failure_time is None
        assert breaker.execute(succeed) == "success"

    def test_negative_configuration_rejected(self):
        """Test that negative thresholds and timeouts are rejected."""
        with pytest.raises(ValueError):
            CircuitBreaker(max_failures=-1, reset_timeout=1)
        with pytest.raises(ValueError):
            CircuitBreaker(max_failures=1, reset_timeout=-1)

    def test_concurrent_failures_open_exactly_at_threshold(self):
        """Test that racing failures never run the operation more than max_failures times."""
        breaker = CircuitBreaker(max_failures=5, reset_timeout=60)
        calls = []
        outcomes = []
        outcomes_lock = threading.Lock()
        start = threading.Barrier(20)

        def failing_call():
            calls.append(1)
            time.sleep(0.001)
            raise ConnectionError("Fail")

        def worker():
            start.wait()
            try:
                breaker.execute(failing_call)
            except Exception as e:
                with outcomes_lock:
                    outcomes.append(type(e))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 5
        assert outcomes.count(ConnectionError) == 5
        assert outcomes.count(CircuitOpenError) == 15
        assert breaker.state == CircuitBreakerState.OPEN

    def test_half_open_admits_single_trial_under_concurrency(self):
        """Test that concurrent callers queue behind the one half-open trial."""
        clock = FakeClock()
        breaker = CircuitBreaker(max_failures=1, reset_timeout=5, clock=clock)

        with pytest.raises(ConnectionError):
            breaker.execute(fail)
        clock.advance(6)

        active = 0
        max_active = 0
        counter_lock = threading.Lock()

        def trial():
            nonlocal active, max_active
            with counter_lock:
                active += 1
                max_active = max(max_active, active)
            time.sleep(0.01)
            with counter_lock:
                active -= 1
            raise ConnectionError("Still failing")

        results = []

        def worker():
            try:
                breaker.execute(trial)
            except Exception as e:
                results.append(type(e))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert max_active == 1
        assert results.count(ConnectionError) == 1
        assert results.count(CircuitOpenError) == 4

    def test_raise_if_open(self):
        """Test that raise_if_open rejects only while the circuit is OPEN."""
        clock = FakeClock()
        breaker = CircuitBreaker(max_failures=1, reset_timeout=5, clock=clock)

        breaker.raise_if_open()
        with pytest.raises(ConnectionError):
            breaker.execute(fail)

        with pytest.raises(CircuitOpenError):
            breaker.raise_if_open()

        clock.advance(6)
        breaker.raise_if_open()
        assert breaker.state == CircuitBreakerState.HALF_OPEN

    def test_synchronous_protect(self):
        """Test the protect_sync decorator."""
        breaker = CircuitBreaker(max_failures=2, reset_timeout=60)

        @breaker.protect_sync
        def sync_call(value):
            return value * 2

        assert sync_call(21) == 42

        @breaker.protect_sync
        def failing_sync_call():
            raise ConnectionError("Fail")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                failing_sync_call()

        assert breaker.state == CircuitBreakerState.OPEN

        with pytest.raises(CircuitOpenError):
            failing_sync_call()


class TestCircuitBreakerAsync:
    """Test suite for the asyncio entry points."""

    @pytest.mark.asyncio
    async def test_execute_async_opens_after_threshold(self):
        """Test that execute_async follows the same threshold policy."""
        breaker = CircuitBreaker(max_failures=3, reset_timeout=60)
        call_count = 0

        async def failing_call():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("Service unavailable")

        for _ in range(3):
            with pytest.raises(ConnectionError):
                await breaker.execute_async(failing_call)

        assert breaker.state == CircuitBreakerState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.execute_async(failing_call)
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_protect_decorator_recovers(self):
        """Test the async protect decorator through a full open/recover cycle."""
        breaker = CircuitBreaker(max_failures=1, reset_timeout=0.1)
        healthy = False

        @breaker.protect
        async def call(value):
            if not healthy:
                raise ConnectionError("Fail")
            return value

        with pytest.raises(ConnectionError):
            await call("x")
        assert breaker.state == CircuitBreakerState.OPEN

        await asyncio.sleep(0.15)
        healthy = True

        assert await call("ok") == "ok"
        assert breaker.state == CircuitBreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_concurrent_tasks_serialized(self):
        """Test that concurrent tasks never overlap inside one breaker."""
        breaker = CircuitBreaker(max_failures=10, reset_timeout=60)
        active = 0
        max_active = 0

        async def call():
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.001)
            active -= 1
            return "success"

        results = await asyncio.gather(*(breaker.execute_async(call) for _ in range(10)))

        assert results == ["success"] * 10
        assert max_active == 1

    def test_breaker_reused_across_event_loops(self):
        """Test that execute_async keeps working when a later asyncio.run reuses the breaker."""
        breaker = CircuitBreaker(max_failures=10, reset_timeout=60)

        async def call():
            await asyncio.sleep(0.01)
            return "success"

        async def contended():
            return await asyncio.gather(breaker.execute_async(call), breaker.execute_async(call))

        assert asyncio.run(contended()) == ["success", "success"]
        assert asyncio.run(contended()) == ["success", "success"]
        assert breaker.state == CircuitBreakerState.CLOSED
