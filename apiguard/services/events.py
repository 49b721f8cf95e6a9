"""
RequestEvents - narrow observer interface for the request layer.

Observers are for observability and collaborator-owned cache upkeep only;
whatever they raise is logged and swallowed so they can never fault a
request.
"""

from dataclasses import dataclass
from typing import Any, Callable

from apiguard.utils import observer_guard


@dataclass
class RateLimitedInfo:
    """Payload passed to on_rate_limited observers."""

    key: str
    delay: float
    remaining: int
    retry_count: int = 0
    reason: str = "local"  # 'local' | 'server'


class RequestEvents:
    """
    Holds optional observers and emits to them safely.

    Usage:
        events = RequestEvents(
            on_success=lambda response: derived_cache.clear(),
            on_rate_limited=lambda info: metrics.incr(info.key),
        )
    """

    def __init__(
        self,
        on_success: Callable[[Any], Any] | None = None,
        on_retry_attempt: Callable[[int, float, BaseException], Any] | None = None,
        on_rate_limited: Callable[[RateLimitedInfo], Any] | None = None,
    ):
        self.on_success = on_success
        self.on_retry_attempt = on_retry_attempt
        self.on_rate_limited = on_rate_limited

    async def emit_success(self, response: Any) -> None:
        if self.on_success is not None:
            await observer_guard(self.on_success)(response)

    async def emit_retry_attempt(
        self, attempt: int, delay: float, error: BaseException
    ) -> None:
        if self.on_retry_attempt is not None:
            await observer_guard(self.on_retry_attempt)(attempt, delay, error)

    async def emit_rate_limited(self, info: RateLimitedInfo) -> None:
        if self.on_rate_limited is not None:
            await observer_guard(self.on_rate_limited)(info)
