"""
Shared fixtures: a virtual clock and a scripted transport.
"""

import asyncio
import inspect
import random
from collections import deque
from dataclasses import dataclass
from typing import Any

import pytest

from apiguard.services.cache import CacheStore
from apiguard.services.client import ServiceClient
from apiguard.services.events import RequestEvents
from apiguard.services.rate_limiter import RateLimiter
from apiguard.services.retry import RetryOrchestrator
from apiguard.services.transport import Transport, TransportResponse


class FakeClock:
    """
    Virtual monotonic clock.

    sleep() yields once, then jumps the clock forward by the requested delay,
    so waits cost no real time. Tasks scheduled just before the sleep run at
    the pre-sleep instant. Concurrent sleepers each advance the clock by their
    own delay.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        await asyncio.sleep(0)
        self.now += max(delay, 0.0)


@dataclass
class SentRequest:
    method: str
    url: str
    params: Any
    body: Any
    headers: Any
    at: float


class ScriptedTransport(Transport):
    """
    Transport that replays queued outcomes.

    Each queued item is a TransportResponse, an exception instance to raise,
    or an async callable producing one of those. When the script runs out
    the default 200 response is returned.
    """

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self._script: deque[Any] = deque()
        self.calls: list[SentRequest] = []
        self.closed = False
        self.default = TransportResponse(200, {"content-type": "application/json"}, {"ok": True})

    def queue(self, *items: Any) -> None:
        self._script.extend(items)

    async def send(self, method, url, params=None, body=None, headers=None):
        self.calls.append(SentRequest(method, url, params, body, headers, self._clock()))
        item = self._script.popleft() if self._script else self.default
        if callable(item):
            item = item()
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


def ok(body: Any = None, status: int = 200, headers: dict | None = None) -> TransportResponse:
    return TransportResponse(status=status, headers=headers or {}, body=body)


async def wait_for_calls(transport: ScriptedTransport, count: int, spins: int = 200) -> None:
    """Yield to the loop until the transport has seen `count` calls."""
    for _ in range(spins):
        if len(transport.calls) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"transport saw {len(transport.calls)} calls, expected {count}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport(clock):
    return ScriptedTransport(clock)


@pytest.fixture
def make_client(clock, transport):
    """Factory for a ServiceClient whose components all run on the fake clock."""

    def factory(events: RequestEvents | None = None, limiter_kwargs: dict | None = None, **kwargs):
        events = events or RequestEvents()
        return ServiceClient(
            transport=transport,
            cache=CacheStore(clock=clock),
            retry=RetryOrchestrator(
                events=events, clock=clock, sleep=clock.sleep, rng=random.Random(0)
            ),
            limiter=RateLimiter(
                events=events,
                clock=clock,
                sleep=clock.sleep,
                rng=random.Random(0),
                **(limiter_kwargs or {}),
            ),
            events=events,
            clock=clock,
            **kwargs,
        )

    return factory
