"""
RetryOrchestrator - re-issues idempotent calls that failed transiently.

Backoff:
    delay(attempt) = min(base_delay * 2 ** (attempt - 1), max_delay) * jitter
    attempt is 1-indexed, jitter is uniform in [0.5, 1.5].

After max_attempts failures the original exception is raised unchanged,
annotated in place with attempts/retry_count/elapsed.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from apiguard.services.errors import HttpStatusError, ServiceError, TransportError
from apiguard.services.events import RequestEvents
from apiguard.services.options import RetryOptions
from apiguard.utils import observer_guard

T = TypeVar("T")

JITTER_MIN = 0.5
JITTER_MAX = 1.5


@dataclass
class RetryState:
    """Per-call retry bookkeeping, never shared across calls."""

    max_attempts: int
    base_delay: float
    max_delay: float
    attempt: int = 0
    last_error: BaseException | None = None


def unjittered_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay before jitter, capped at max_delay."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rng: random.Random | None = None,
) -> float:
    """Calculate the jittered delay before retry number `attempt`."""
    delay = unjittered_delay(attempt, base_delay, max_delay)
    factor = (rng or random).uniform(JITTER_MIN, JITTER_MAX)
    return delay * factor


def is_retryable(error: BaseException, method: str, options: RetryOptions) -> bool:
    """Default eligibility: idempotent method and a transient failure."""
    if method.upper() not in options.idempotent_methods:
        return False
    if isinstance(error, TransportError):
        return True
    if isinstance(error, HttpStatusError):
        return error.status in options.retryable_statuses
    return False


class RetryOrchestrator:
    """
    Executes a call against the transport, retrying transient failures.

    Usage:
        orchestrator = RetryOrchestrator()

        response = await orchestrator.execute(
            lambda: transport.send("GET", "/venues"),
            method="GET",
            options=RetryOptions(max_attempts=3),
        )
    """

    def __init__(
        self,
        default_options: RetryOptions | None = None,
        events: RequestEvents | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        debug: bool = False,
    ):
        self.default_options = default_options or RetryOptions()
        self._events = events or RequestEvents()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._debug = debug

    def should_retry(
        self, error: BaseException, method: str, options: RetryOptions
    ) -> bool:
        """An override predicate, when supplied, takes precedence.

        A predicate that raises counts as "do not retry", so the original
        error still surfaces.
        """
        if options.retry_if is not None:
            try:
                return bool(options.retry_if(error))
            except Exception as e:
                logger.opt(exception=e).warning(
                    f"retry_if raised {type(e).__name__}, not retrying {method}"
                )
                return False
        return is_retryable(error, method, options)

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        method: str = "GET",
        options: RetryOptions | None = None,
    ) -> T:
        """
        Run `call`, retrying on eligible failures.

        Args:
            call: Zero-argument coroutine factory performing one attempt
            method: HTTP method, used for idempotency eligibility
            options: Retry settings (defaults to the orchestrator's)

        Returns:
            The first successful result

        Raises:
            The last attempt's exception, unchanged
        """
        options = options or self.default_options
        max_attempts = options.max_attempts if options.enabled else 1
        state = RetryState(
            max_attempts=max_attempts,
            base_delay=options.base_delay,
            max_delay=options.max_delay,
        )
        started = self._clock()

        while True:
            state.attempt += 1
            try:
                result = await call()
                if state.attempt > 1:
                    logger.info(
                        f"Retry succeeded: {method} on attempt {state.attempt}"
                    )
                return result

            except Exception as e:
                state.last_error = e
                exhausted = state.attempt >= state.max_attempts
                if exhausted or not self.should_retry(e, method, options):
                    if exhausted and state.max_attempts > 1:
                        logger.warning(
                            f"All {state.attempt} attempts exhausted for {method}: {e}"
                        )
                    self._annotate(e, state, started)
                    raise

                delay = compute_delay(
                    state.attempt, state.base_delay, state.max_delay, self._rng
                )
                logger.info(
                    f"Attempt {state.attempt}/{state.max_attempts} for {method} "
                    f"failed ({type(e).__name__}), retrying in {delay:.2f}s"
                )
                if options.on_retry is not None:
                    await observer_guard(options.on_retry)(state.attempt, delay, e)
                await self._events.emit_retry_attempt(state.attempt, delay, e)

                await self._sleep(delay)

    def _annotate(
        self, error: BaseException, state: RetryState, started: float
    ) -> None:
        if isinstance(error, ServiceError):
            error.attempts = state.attempt
            error.retry_count = state.attempt - 1
            error.elapsed = self._clock() - started
        self._log(
            f"SURFACE: {type(error).__name__} after {state.attempt} attempt(s)"
        )

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RetryOrchestrator] {message}")
