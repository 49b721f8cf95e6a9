"""
RateLimiter - sliding-window admission with per-key FIFO queueing.

Admission:
- Each key keeps the ordered instants of its admitted calls
- Instants older than the window are pruned lazily on every check
- A call is admitted iff every applicable window has room
  (the key's own window, plus the shared global window when configured)

Queueing:
- Denied calls wait in a FIFO queue per key
- One drain task per key admits the head as soon as the windows allow
- A server 429 on an admitted call re-queues it at the head with its own
  re-queue counter, honoring Retry-After; past max_requeues the caller
  gets RateLimitError
"""

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from apiguard.services.errors import HttpStatusError, RateLimitError
from apiguard.services.events import RateLimitedInfo, RequestEvents
from apiguard.services.retry import compute_delay

T = TypeVar("T")

GLOBAL_WINDOW_KEY = "__global__"
# Floor for drain waits so float rounding can never spin the loop
MIN_DRAIN_WAIT = 0.001
# Idle windows are dropped once the window map grows past this size
IDLE_SWEEP_THRESHOLD = 64


@dataclass(frozen=True)
class RateLimitRule:
    """At most max_requests admissions in any trailing window."""

    max_requests: int = 60
    window: timedelta = timedelta(minutes=1)

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window.total_seconds() <= 0:
            raise ValueError("window must be positive")


@dataclass
class RateWindow:
    """Admission instants for one key within the trailing window."""

    key: str
    rule: RateLimitRule
    timestamps: deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        cutoff = now - self.rule.window.total_seconds()
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def has_capacity(self, now: float) -> bool:
        self.prune(now)
        return len(self.timestamps) < self.rule.max_requests

    def remaining(self, now: float) -> int:
        self.prune(now)
        return max(0, self.rule.max_requests - len(self.timestamps))

    def reset_in(self, now: float) -> float:
        """Seconds until this window can admit again (0 if it can now)."""
        self.prune(now)
        if len(self.timestamps) < self.rule.max_requests:
            return 0.0
        return max(0.0, self.timestamps[0] + self.rule.window.total_seconds() - now)


@dataclass
class QueueEntry:
    """A call waiting for admission."""

    invoke: Callable[[], Awaitable[Any]]
    key: str
    continuation: asyncio.Future
    retry_count: int = 0
    not_before: float = 0.0
    task: asyncio.Task | None = None


class RateLimiter:
    """
    Client-side throttle that also absorbs server rate-limit signals.

    All window and queue mutations happen synchronously inside one turn of
    the event loop; a threaded port needs a lock around the
    check-count-then-append in _try_admit.

    Usage:
        limiter = RateLimiter(default_rule=RateLimitRule(2, timedelta(seconds=1)))

        response = await limiter.admit_or_queue("venues", lambda: send())
    """

    def __init__(
        self,
        default_rule: RateLimitRule | None = None,
        global_rule: RateLimitRule | None = None,
        endpoint_rules: dict[str, RateLimitRule] | None = None,
        max_requeues: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        enabled: bool = True,
        events: RequestEvents | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        debug: bool = False,
    ):
        self.default_rule = default_rule or RateLimitRule()
        self.global_rule = global_rule
        self.max_requeues = max_requeues
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.enabled = enabled

        self._endpoint_rules: dict[str, RateLimitRule] = dict(endpoint_rules or {})
        self._events = events or RequestEvents()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._debug = debug

        self._windows: dict[str, RateWindow] = {}
        self._queues: dict[str, deque[QueueEntry]] = {}
        self._drainers: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()
        self._idle_sweep_at = IDLE_SWEEP_THRESHOLD
        self._stats = LimiterStats()

    # ── Configuration ──

    def configure_endpoint(self, key: str, rule: RateLimitRule) -> None:
        """Set a per-endpoint rule for a key."""
        self._endpoint_rules[key] = rule
        window = self._windows.get(key)
        if window is not None:
            window.rule = rule
        logger.debug(
            f"Rate limit for '{key}': {rule.max_requests} / "
            f"{rule.window.total_seconds()}s"
        )

    def _window(self, name: str, rule: RateLimitRule) -> RateWindow:
        # Unstored until something is admitted through it
        window = self._windows.get(name)
        if window is None:
            window = RateWindow(key=name, rule=rule)
        return window

    def _windows_for(self, key: str) -> list[RateWindow]:
        rule = self._endpoint_rules.get(key, self.default_rule)
        windows = [self._window(key, rule)]
        if self.global_rule is not None and key != GLOBAL_WINDOW_KEY:
            windows.append(self._window(GLOBAL_WINDOW_KEY, self.global_rule))
        return windows

    # ── Queries ──

    def remaining(self, key: str = "global") -> int:
        """Admissions left right now; the tightest window wins."""
        now = self._clock()
        return min(w.remaining(now) for w in self._windows_for(key))

    def reset_in(self, key: str = "global") -> float:
        """Seconds until the key can be admitted; the binding window wins."""
        now = self._clock()
        return max(w.reset_in(now) for w in self._windows_for(key))

    def queue_length(self, key: str = "global") -> int:
        return len(self._queues.get(key, ()))

    # ── Admission ──

    def _try_admit(self, key: str) -> bool:
        now = self._clock()
        windows = self._windows_for(key)
        if not all(w.has_capacity(now) for w in windows):
            return False
        for window in windows:
            window.timestamps.append(now)
            self._windows[window.key] = window
        self._stats.admitted += 1
        if len(self._windows) > self._idle_sweep_at:
            self._forget_idle_windows(now)
        self._log(f"ADMIT: {key} (remaining {self.remaining(key)})")
        return True

    def _forget_idle_windows(self, now: float) -> None:
        """Drop windows with no admissions left in their trailing interval."""
        for name, window in list(self._windows.items()):
            window.prune(now)
            if not window.timestamps:
                del self._windows[name]
        self._idle_sweep_at = max(IDLE_SWEEP_THRESHOLD, 2 * len(self._windows))

    async def admit_or_queue(
        self,
        key: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Run `call` once the key's windows admit it.

        Args:
            key: Rate limit key (endpoint or 'global')
            call: Zero-argument coroutine factory

        Returns:
            The call's result

        Raises:
            RateLimitError: If the server kept rate limiting past max_requeues
            Any exception raised by the call itself
        """
        if not self.enabled:
            return await call()

        loop = asyncio.get_running_loop()
        entry = QueueEntry(invoke=call, key=key, continuation=loop.create_future())
        entry.continuation.add_done_callback(
            lambda fut: self._on_settled(entry, fut)
        )

        if not self._queues.get(key) and self._try_admit(key):
            self._launch(entry)
        else:
            queue = self._queues.setdefault(key, deque())
            queue.append(entry)
            self._stats.queued += 1
            delay = self.reset_in(key)
            self._log(f"QUEUE: {key} (position {len(queue)}, wait {delay:.2f}s)")
            self._ensure_drain(key)
            await self._events.emit_rate_limited(
                RateLimitedInfo(key=key, delay=delay, remaining=self.remaining(key))
            )

        return await entry.continuation

    def _on_settled(self, entry: QueueEntry, fut: asyncio.Future) -> None:
        # Caller went away: stop the execution if it already started
        if fut.cancelled() and entry.task is not None and not entry.task.done():
            entry.task.cancel()

    def _ensure_drain(self, key: str) -> None:
        task = self._drainers.get(key)
        if task is None or task.done():
            self._drainers[key] = asyncio.create_task(self._drain(key))

    async def _drain(self, key: str) -> None:
        """Admit queued calls for one key in FIFO order."""
        queue = self._queues[key]
        try:
            while queue:
                entry = queue[0]
                if entry.continuation.done():
                    queue.popleft()
                    self._log(f"ABANDON: {key}")
                    continue

                now = self._clock()
                if entry.not_before > now:
                    await self._sleep(entry.not_before - now)
                    continue

                if not self._try_admit(key):
                    await self._sleep(max(self.reset_in(key), MIN_DRAIN_WAIT))
                    continue

                queue.popleft()
                self._launch(entry)
        finally:
            if self._drainers.get(key) is asyncio.current_task():
                del self._drainers[key]
            if not queue and self._queues.get(key) is queue:
                del self._queues[key]

    def _launch(self, entry: QueueEntry) -> None:
        task = asyncio.create_task(self._execute(entry))
        entry.task = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        task.add_done_callback(lambda t: self._on_task_done(entry, t))

    def _on_task_done(self, entry: QueueEntry, task: asyncio.Task) -> None:
        # A task cancelled before it ever ran never settles its continuation
        if task.cancelled() and not entry.continuation.done():
            entry.continuation.cancel()

    async def _execute(self, entry: QueueEntry) -> None:
        fut = entry.continuation
        try:
            result = await entry.invoke()
        except asyncio.CancelledError:
            if not fut.done():
                fut.cancel()
            raise
        except HttpStatusError as e:
            if e.status == 429:
                await self._handle_server_limit(entry, e)
            elif not fut.done():
                fut.set_exception(e)
        except Exception as e:
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(result)

    async def _handle_server_limit(
        self, entry: QueueEntry, error: HttpStatusError
    ) -> None:
        """Re-queue a call the server rate limited, or fail it past the ceiling."""
        fut = entry.continuation
        if fut.done():
            return

        if entry.retry_count >= self.max_requeues:
            self._stats.rejected += 1
            logger.warning(
                f"Server rate limit on '{entry.key}' persisted after "
                f"{entry.retry_count} re-queues, giving up"
            )
            rate_error = RateLimitError(
                entry.key,
                retry_after=error.retry_after,
                retry_count=entry.retry_count,
            )
            rate_error.__cause__ = error
            fut.set_exception(rate_error)
            return

        entry.retry_count += 1
        hint = error.retry_after
        delay = (
            hint
            if hint is not None
            else compute_delay(
                entry.retry_count, self.retry_delay, self.max_retry_delay, self._rng
            )
        )
        entry.not_before = self._clock() + delay
        entry.task = None
        self._queues.setdefault(entry.key, deque()).appendleft(entry)
        self._stats.requeued += 1
        self._ensure_drain(entry.key)

        logger.warning(
            f"Server rate limit on '{entry.key}', re-queued "
            f"({entry.retry_count}/{self.max_requeues}) for {delay:.2f}s"
        )
        await self._events.emit_rate_limited(
            RateLimitedInfo(
                key=entry.key,
                delay=delay,
                remaining=self.remaining(entry.key),
                retry_count=entry.retry_count,
                reason="server",
            )
        )

    # ── Lifecycle ──

    def reset(self, key: str | None = None) -> None:
        """Forget admission history for one key, or for all keys."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)

    async def close(self) -> int:
        """Cancel queued and running calls. Returns how many were cancelled."""
        count = 0
        for queue in self._queues.values():
            for entry in queue:
                if not entry.continuation.done():
                    entry.continuation.cancel()
                    count += 1
            queue.clear()

        count += len(self._running)
        tasks = list(self._drainers.values()) + list(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drainers.clear()
        self._running.clear()
        if count:
            self._log(f"CLOSE: {count} calls cancelled")
        return count

    def get_stats(self) -> "LimiterStats":
        """Get rate limiter statistics."""
        self._stats.queue_depth = sum(len(q) for q in self._queues.values())
        self._stats.running = len(self._running)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RateLimiter] {message}")


@dataclass
class LimiterStats:
    """Rate limiter statistics."""

    admitted: int = 0
    queued: int = 0
    requeued: int = 0
    rejected: int = 0
    queue_depth: int = 0
    running: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "admitted": self.admitted,
            "queued": self.queued,
            "requeued": self.requeued,
            "rejected": self.rejected,
            "queue_depth": self.queue_depth,
            "running": self.running,
        }
