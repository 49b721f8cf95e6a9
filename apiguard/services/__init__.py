"""
Request layer infrastructure - resilience patterns for remote API calls.

Provides:
- CacheStore: TTL cache of read responses with path-prefix invalidation
- RetryOrchestrator: Exponential backoff with jitter for transient failures
- RateLimiter: Sliding-window admission with per-key FIFO queueing
- CancellationCoordinator: Supersedes in-flight requests per key
- ServiceClient: Unified client combining all patterns
"""

from apiguard.services.errors import (
    ServiceError,
    TransportError,
    HttpStatusError,
    RateLimitError,
    SupersededError,
    RequestTimeoutError,
)
from apiguard.services.cache import CacheStore, CacheEntry, CachedPayload, CacheStats
from apiguard.services.sweeper import CacheSweeper
from apiguard.services.retry import RetryOrchestrator, RetryState, compute_delay
from apiguard.services.rate_limiter import (
    RateLimiter,
    RateLimitRule,
    RateWindow,
    QueueEntry,
)
from apiguard.services.cancellation import AbortSignal, CancellationCoordinator
from apiguard.services.events import RequestEvents, RateLimitedInfo
from apiguard.services.options import (
    CacheOptions,
    RetryOptions,
    RateLimitOptions,
    CancellationOptions,
    RequestOptions,
)
from apiguard.services.transport import Transport, TransportResponse, HttpxTransport
from apiguard.services.client import ServiceClient, RequestResult

__all__ = [
    # Errors
    "ServiceError",
    "TransportError",
    "HttpStatusError",
    "RateLimitError",
    "SupersededError",
    "RequestTimeoutError",
    # Cache
    "CacheStore",
    "CacheEntry",
    "CachedPayload",
    "CacheStats",
    "CacheSweeper",
    # Retry
    "RetryOrchestrator",
    "RetryState",
    "compute_delay",
    # Rate Limiter
    "RateLimiter",
    "RateLimitRule",
    "RateWindow",
    "QueueEntry",
    # Cancellation
    "AbortSignal",
    "CancellationCoordinator",
    # Events and options
    "RequestEvents",
    "RateLimitedInfo",
    "CacheOptions",
    "RetryOptions",
    "RateLimitOptions",
    "CancellationOptions",
    "RequestOptions",
    # Transport and client
    "Transport",
    "TransportResponse",
    "HttpxTransport",
    "ServiceClient",
    "RequestResult",
]
