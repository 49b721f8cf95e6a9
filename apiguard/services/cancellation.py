"""
CancellationCoordinator - keeps one outstanding request per logical key.

When a new equivalent request is registered, the previous one is aborted
synchronously, so only the most recent result reaches the caller. The
aborted predecessor settles with SupersededError, which collaborators are
expected to swallow.

Cancellation is cooperative: it suppresses delivery of the superseded
call's settlement and cancels its local task, but the remote side may
still have processed it.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from apiguard.services.errors import SupersededError

T = TypeVar("T")


class AbortSignal:
    """Abort flag for one registered call."""

    def __init__(self, key: str):
        self.key = key
        self.reason: str | None = None
        self._aborted = False
        self._event = asyncio.Event()
        self._callbacks: list[Callable[["AbortSignal"], Any]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def add_callback(self, callback: Callable[["AbortSignal"], Any]) -> None:
        """Run callback on abort (immediately if already aborted)."""
        if self._aborted:
            callback(self)
        else:
            self._callbacks.append(callback)

    def abort(self, reason: str = "superseded by a newer request") -> None:
        if self._aborted:
            return
        self._aborted = True
        self.reason = reason
        self._event.set()
        for callback in self._callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.opt(exception=e).warning(
                    f"Abort callback for '{self.key}' raised {type(e).__name__}"
                )
        self._callbacks.clear()

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise SupersededError(self.key, self.reason or "aborted")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless this signal is aborted first.

        On abort the underlying task is cancelled and SupersededError is
        raised. A result that arrives after the abort is discarded.
        """
        if self._aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_aborted()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done() and not self._aborted:
            return task.result()

        task.cancel()
        if task.done() and not task.cancelled():
            # Retrieve so a late failure is not reported as unhandled
            task.exception()
        raise SupersededError(self.key, self.reason or "aborted")


class CancellationCoordinator:
    """
    Tracks the current call per key and aborts its predecessor.

    register() is synchronous: the check-then-replace on the slot runs in a
    single turn of the event loop. A threaded port needs a lock around it.

    Usage:
        coordinator = CancellationCoordinator()

        signal = coordinator.register("GET /venues?q=ten")
        try:
            return await signal.guard(fetch())
        finally:
            coordinator.release("GET /venues?q=ten", signal)
    """

    def __init__(self, debug: bool = False):
        self._slots: dict[str, AbortSignal] = {}
        self._debug = debug
        self._stats = CancellationStats()

    def register(self, key: str) -> AbortSignal:
        """
        Install a new slot for key, aborting any previous holder first.

        Args:
            key: Logical request key

        Returns:
            The signal for the newly registered call
        """
        previous = self._slots.get(key)
        if previous is not None:
            previous.abort()
            self._stats.superseded += 1
            self._log(f"SUPERSEDE: {key[:50]}...")

        signal = AbortSignal(key)
        self._slots[key] = signal
        self._stats.registered += 1
        self._log(f"REGISTER: {key[:50]}...")
        return signal

    def release(self, key: str, signal: AbortSignal) -> bool:
        """Remove the slot once its call settles, unless a newer call owns it."""
        if self._slots.get(key) is signal:
            del self._slots[key]
            self._log(f"DONE: {key[:50]}...")
            return True
        return False

    def cancel(self, key: str, reason: str = "request was cancelled") -> bool:
        """Abort the in-flight call for a key."""
        signal = self._slots.pop(key, None)
        if signal is None:
            return False
        signal.abort(reason)
        self._log(f"CANCEL: {key[:50]}...")
        return True

    def cancel_all(self, reason: str = "all requests were cancelled") -> int:
        """Abort every in-flight call."""
        count = len(self._slots)
        for signal in self._slots.values():
            signal.abort(reason)
        self._slots.clear()
        if count:
            self._log(f"CANCEL_ALL: {count} requests cancelled")
        return count

    def in_flight_keys(self) -> list[str]:
        """Get keys of all in-flight requests."""
        return list(self._slots.keys())

    def get_in_flight_count(self) -> int:
        return len(self._slots)

    def get_stats(self) -> "CancellationStats":
        """Get cancellation statistics."""
        self._stats.in_flight = len(self._slots)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Cancellation] {message}")


class CancellationStats:
    """Statistics for request supersession."""

    def __init__(self):
        self.registered: int = 0  # Calls registered
        self.superseded: int = 0  # Calls aborted by a newer registration
        self.in_flight: int = 0  # Current slots

    @property
    def supersede_rate(self) -> float:
        if self.registered == 0:
            return 0.0
        return self.superseded / self.registered

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "registered": self.registered,
            "superseded": self.superseded,
            "in_flight": self.in_flight,
            "supersede_rate": f"{self.supersede_rate:.2%}",
        }
