"""
Unit tests for RetryOrchestrator.
"""

import random

import pytest

from apiguard.services.errors import HttpStatusError, TransportError
from apiguard.services.events import RequestEvents
from apiguard.services.options import RetryOptions
from apiguard.services.retry import (
    RetryOrchestrator,
    compute_delay,
    is_retryable,
    unjittered_delay,
)


@pytest.fixture
def orchestrator(clock):
    return RetryOrchestrator(clock=clock, sleep=clock.sleep, rng=random.Random(42))


def failing(clock, errors, result="ok"):
    """Call factory that raises the given errors in order, then returns result."""
    times = []
    pending = list(errors)

    async def call():
        times.append(clock())
        if pending:
            raise pending.pop(0)
        return result

    return call, times


class TestBackoff:
    """Test delay computation."""

    def test_unjittered_delay_doubles_until_cap(self):
        delays = [unjittered_delay(n, 1.0, 10.0) for n in range(1, 8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0, 10.0]

    def test_unjittered_delay_is_monotonic(self):
        delays = [unjittered_delay(n, 0.3, 7.0) for n in range(1, 20)]
        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert max(delays) == 7.0

    def test_jittered_delay_within_bounds(self):
        rng = random.Random(1)
        for attempt in range(1, 10):
            base = unjittered_delay(attempt, 1.0, 10.0)
            for _ in range(200):
                delay = compute_delay(attempt, 1.0, 10.0, rng)
                assert 0.5 * base <= delay <= 1.5 * base


class TestEligibility:
    """Test the default retry predicate."""

    def test_transport_error_on_idempotent_method(self):
        assert is_retryable(TransportError("down"), "GET", RetryOptions())
        assert is_retryable(TransportError("down"), "put", RetryOptions())

    def test_post_is_never_retried_by_default(self):
        assert not is_retryable(TransportError("down"), "POST", RetryOptions())
        assert not is_retryable(HttpStatusError(503), "PATCH", RetryOptions())

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert is_retryable(HttpStatusError(status), "GET", RetryOptions())

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422])
    def test_client_errors_are_not_retried(self, status):
        assert not is_retryable(HttpStatusError(status), "GET", RetryOptions())

    def test_unknown_exceptions_are_not_retried(self):
        assert not is_retryable(ValueError("bad json"), "GET", RetryOptions())


class TestRetryOrchestrator:
    """Test retry execution."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, orchestrator, clock):
        call, times = failing(clock, [])
        assert await orchestrator.execute(call, "GET") == "ok"
        assert times == [0.0]
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_transport_failures_surface_original_error(self, orchestrator, clock):
        """max_attempts=3, base 1s, max 10s: attempts at 0, +[0.5,1.5], +[1,3]."""
        error = TransportError("connection refused")
        call, times = failing(clock, [error, error, error])

        with pytest.raises(TransportError) as exc_info:
            await orchestrator.execute(
                call, "GET", RetryOptions(max_attempts=3, base_delay=1.0, max_delay=10.0)
            )

        assert exc_info.value is error
        assert len(times) == 3
        assert times[0] == 0.0
        assert 0.5 <= times[1] - times[0] <= 1.5
        assert 1.0 <= times[2] - times[1] <= 3.0
        assert error.attempts == 3
        assert error.retry_count == 2
        assert error.elapsed == pytest.approx(times[2])

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, orchestrator, clock):
        call, times = failing(clock, [HttpStatusError(503), TransportError("reset")])
        result = await orchestrator.execute(call, "GET", RetryOptions(max_attempts=3))
        assert result == "ok"
        assert len(times) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_status_surfaces_immediately(self, orchestrator, clock):
        error = HttpStatusError(404)
        call, times = failing(clock, [error])

        with pytest.raises(HttpStatusError) as exc_info:
            await orchestrator.execute(call, "GET", RetryOptions(max_attempts=5))

        assert exc_info.value is error
        assert len(times) == 1
        assert error.retry_count == 0

    @pytest.mark.asyncio
    async def test_post_is_not_retried(self, orchestrator, clock):
        call, times = failing(clock, [TransportError("down")])
        with pytest.raises(TransportError):
            await orchestrator.execute(call, "POST", RetryOptions(max_attempts=5))
        assert len(times) == 1

    @pytest.mark.asyncio
    async def test_override_predicate_takes_precedence(self, orchestrator, clock):
        call, times = failing(clock, [HttpStatusError(409), HttpStatusError(409)])
        options = RetryOptions(
            max_attempts=3,
            retry_if=lambda e: isinstance(e, HttpStatusError) and e.status == 409,
        )
        assert await orchestrator.execute(call, "POST", options) == "ok"
        assert len(times) == 3

    @pytest.mark.asyncio
    async def test_override_predicate_can_refuse(self, orchestrator, clock):
        call, times = failing(clock, [TransportError("down")])
        options = RetryOptions(max_attempts=3, retry_if=lambda e: False)
        with pytest.raises(TransportError):
            await orchestrator.execute(call, "GET", options)
        assert len(times) == 1

    @pytest.mark.asyncio
    async def test_raising_predicate_surfaces_original_error(self, orchestrator, clock):
        def broken(error):
            raise KeyError("status")

        error = TransportError("down")
        call, times = failing(clock, [error])

        with pytest.raises(TransportError) as exc_info:
            await orchestrator.execute(call, "GET", RetryOptions(max_attempts=3, retry_if=broken))

        assert exc_info.value is error
        assert error.attempts == 1
        assert len(times) == 1

    @pytest.mark.asyncio
    async def test_disabled_makes_single_attempt(self, orchestrator, clock):
        call, times = failing(clock, [TransportError("down")])
        with pytest.raises(TransportError):
            await orchestrator.execute(call, "GET", RetryOptions(enabled=False))
        assert len(times) == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback_receives_attempt_delay_error(self, orchestrator, clock):
        seen = []
        error = TransportError("down")
        call, _ = failing(clock, [error, error])
        options = RetryOptions(
            max_attempts=3, on_retry=lambda n, delay, e: seen.append((n, delay, e))
        )

        await orchestrator.execute(call, "GET", options)

        assert [n for n, _, _ in seen] == [1, 2]
        assert [d for _, d, _ in seen] == clock.sleeps
        assert all(e is error for _, _, e in seen)

    @pytest.mark.asyncio
    async def test_failing_observers_do_not_change_control_flow(self, clock):
        def explode(*args):
            raise RuntimeError("observer bug")

        orchestrator = RetryOrchestrator(
            events=RequestEvents(on_retry_attempt=explode),
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(3),
        )
        call, times = failing(clock, [TransportError("down")])

        result = await orchestrator.execute(
            call, "GET", RetryOptions(max_attempts=2, on_retry=explode)
        )

        assert result == "ok"
        assert len(times) == 2
