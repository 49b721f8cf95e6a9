"""
Unit tests for CancellationCoordinator and AbortSignal.
"""

import asyncio

import pytest

from apiguard.services.cancellation import AbortSignal, CancellationCoordinator
from apiguard.services.errors import SupersededError


class TestCoordinator:
    """Test slot bookkeeping."""

    def test_register_aborts_previous_holder(self):
        coordinator = CancellationCoordinator()
        first = coordinator.register("GET /venues")
        second = coordinator.register("GET /venues")

        assert first.aborted
        assert not second.aborted
        assert coordinator.in_flight_keys() == ["GET /venues"]

    def test_distinct_keys_do_not_interfere(self):
        coordinator = CancellationCoordinator()
        a = coordinator.register("a")
        b = coordinator.register("b")

        assert not a.aborted
        assert not b.aborted
        assert coordinator.get_in_flight_count() == 2

    def test_release_by_stale_holder_keeps_newer_slot(self):
        coordinator = CancellationCoordinator()
        first = coordinator.register("k")
        second = coordinator.register("k")

        assert coordinator.release("k", first) is False
        assert coordinator.in_flight_keys() == ["k"]
        assert coordinator.release("k", second) is True
        assert coordinator.in_flight_keys() == []

    def test_cancel_single_key(self):
        coordinator = CancellationCoordinator()
        signal = coordinator.register("k")

        assert coordinator.cancel("k") is True
        assert signal.aborted
        assert signal.reason == "request was cancelled"
        assert coordinator.cancel("k") is False

    def test_cancel_all(self):
        coordinator = CancellationCoordinator()
        signals = [coordinator.register(k) for k in ("a", "b", "c")]

        assert coordinator.cancel_all() == 3
        assert all(s.aborted for s in signals)
        assert coordinator.get_in_flight_count() == 0

    def test_stats(self):
        coordinator = CancellationCoordinator()
        coordinator.register("k")
        coordinator.register("k")

        stats = coordinator.get_stats()
        assert stats.registered == 2
        assert stats.superseded == 1
        assert stats.in_flight == 1
        assert stats.to_dict()["supersede_rate"] == "50.00%"


class TestAbortSignal:
    """Test abort propagation into awaited work."""

    def test_callbacks_run_once_on_abort(self):
        signal = AbortSignal("k")
        seen = []
        signal.add_callback(lambda s: seen.append(s.reason))

        signal.abort("first")
        signal.abort("second")

        assert seen == ["first"]
        assert signal.reason == "first"

    def test_callback_added_after_abort_runs_immediately(self):
        signal = AbortSignal("k")
        signal.abort()
        seen = []
        signal.add_callback(seen.append)
        assert seen == [signal]

    def test_raising_callback_does_not_block_others(self):
        signal = AbortSignal("k")
        seen = []

        def explode(_):
            raise RuntimeError("bad callback")

        signal.add_callback(explode)
        signal.add_callback(seen.append)
        signal.abort()

        assert seen == [signal]

    def test_raise_if_aborted(self):
        signal = AbortSignal("k")
        signal.raise_if_aborted()
        signal.abort("gone")
        with pytest.raises(SupersededError) as exc_info:
            signal.raise_if_aborted()
        assert exc_info.value.reason == "gone"

    @pytest.mark.asyncio
    async def test_guard_returns_result(self):
        async def work():
            return 42

        assert await AbortSignal("k").guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_propagates_errors(self):
        async def work():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await AbortSignal("k").guard(work())

    @pytest.mark.asyncio
    async def test_abort_cancels_work_and_raises_superseded(self):
        signal = AbortSignal("k")
        started = asyncio.Event()
        cancelled = []

        async def work():
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        guarded = asyncio.create_task(signal.guard(work()))
        await started.wait()
        signal.abort()

        with pytest.raises(SupersededError):
            await guarded
        for _ in range(3):
            await asyncio.sleep(0)
        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_result_arriving_after_abort_is_discarded(self):
        signal = AbortSignal("k")

        async def work():
            signal.abort()
            return "late"

        with pytest.raises(SupersededError):
            await signal.guard(work())

    @pytest.mark.asyncio
    async def test_guard_on_aborted_signal_never_starts_work(self):
        signal = AbortSignal("k")
        signal.abort()
        ran = []

        async def work():
            ran.append(True)

        with pytest.raises(SupersededError):
            await signal.guard(work())
        assert ran == []

    @pytest.mark.asyncio
    async def test_newer_registration_wins(self):
        coordinator = CancellationCoordinator()
        release_first = asyncio.Event()

        async def slow():
            await release_first.wait()
            return "first"

        async def fast():
            return "second"

        first_signal = coordinator.register("k")
        first = asyncio.create_task(first_signal.guard(slow()))
        await asyncio.sleep(0)

        second_signal = coordinator.register("k")
        assert await second_signal.guard(fast()) == "second"

        release_first.set()
        with pytest.raises(SupersededError):
            await first
