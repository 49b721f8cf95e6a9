"""
ServiceClient - resilient request layer in front of a remote HTTP API.

Per call:
- CancellationCoordinator registers the call (read-only calls by default)
- RateLimiter admits or queues it
- RetryOrchestrator executes it against the transport, retrying failures
- CacheStore serves and stores read results; successful mutations
  invalidate everything under the affected resource path
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Generic, Mapping, TypeVar

from loguru import logger

from apiguard.services.cache import CachedPayload, CacheStore, resource_path
from apiguard.services.cancellation import AbortSignal, CancellationCoordinator
from apiguard.services.errors import (
    HttpStatusError,
    RequestTimeoutError,
    SupersededError,
)
from apiguard.services.events import RequestEvents
from apiguard.services.options import (
    MUTATION_METHODS,
    READ_ONLY_METHODS,
    RequestOptions,
    RetryOptions,
)
from apiguard.services.rate_limiter import RateLimiter, RateLimitRule
from apiguard.services.retry import RetryOrchestrator
from apiguard.services.sweeper import CacheSweeper
from apiguard.services.transport import HttpxTransport, Transport, TransportResponse
from apiguard.settings import Settings, global_settings
from apiguard.utils import observer_guard

T = TypeVar("T")


@dataclass
class RequestResult(Generic[T]):
    """Result from a service request."""

    data: T
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    from_cache: str | None = None  # 'memory' | 'stale' | None
    is_stale: bool = False
    cache_key: str | None = None
    attempts: int = 0
    elapsed: float = 0.0


class ServiceClient:
    """
    Unified HTTP client with caching, retries, rate limiting and supersession.

    Usage:
        async with ServiceClient.from_settings() as client:
            result = await client.get("/venues", params={"sport": "tennis"})

            # Superseding search: only the newest result is delivered
            latest = await client.fetch_latest("GET", "/venues/search",
                                               params={"q": text})

            # Mutation: invalidates every cached read under /venues/42
            await client.put("/venues/42", body={"name": "Center Court"})
    """

    def __init__(
        self,
        transport: Transport | None = None,
        cache: CacheStore | None = None,
        retry: RetryOrchestrator | None = None,
        limiter: RateLimiter | None = None,
        coordinator: CancellationCoordinator | None = None,
        events: RequestEvents | None = None,
        default_options: RequestOptions | None = None,
        timeout: float | None = 30.0,
        sweep_interval: float = 300.0,
        service_id: str = "api",
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self.service_id = service_id
        self._timeout = timeout
        self._clock = clock
        self._debug = debug

        self._events = events or RequestEvents()
        self._transport = transport or HttpxTransport()
        self._cache = cache or CacheStore(clock=clock, debug=debug)
        self._retry = retry or RetryOrchestrator(events=self._events, clock=clock, debug=debug)
        self._limiter = limiter or RateLimiter(events=self._events, clock=clock, debug=debug)
        self._coordinator = coordinator or CancellationCoordinator(debug=debug)
        self._sweeper = CacheSweeper(self._cache, interval_seconds=sweep_interval)
        self.default_options = default_options or RequestOptions()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        transport: Transport | None = None,
        events: RequestEvents | None = None,
    ) -> "ServiceClient":
        """Build a client whose components are configured from Settings."""
        settings = settings or global_settings
        events = events or RequestEvents()
        retry_options = RetryOptions(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        return cls(
            transport=transport
            or HttpxTransport(
                base_url=settings.api_base_url,
                timeout=settings.request_timeout,
                headers={"Content-Type": "application/json"},
            ),
            cache=CacheStore(
                default_ttl=timedelta(seconds=settings.cache_ttl_seconds),
                max_size=settings.cache_max_size,
                debug=settings.debug,
            ),
            retry=RetryOrchestrator(
                default_options=retry_options, events=events, debug=settings.debug
            ),
            limiter=RateLimiter(
                default_rule=RateLimitRule(
                    max_requests=settings.rate_limit_max_requests,
                    window=timedelta(seconds=settings.rate_limit_window_seconds),
                ),
                max_requeues=settings.rate_limit_max_requeues,
                retry_delay=settings.rate_limit_retry_delay,
                max_retry_delay=settings.rate_limit_max_retry_delay,
                enabled=settings.rate_limit_enabled,
                events=events,
                debug=settings.debug,
            ),
            events=events,
            default_options=RequestOptions(retry=retry_options),
            timeout=settings.overall_timeout,
            sweep_interval=settings.cache_sweep_interval_seconds,
            debug=settings.debug,
        )

    # ── Components ──

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def coordinator(self) -> CancellationCoordinator:
        return self._coordinator

    @property
    def sweeper(self) -> CacheSweeper:
        return self._sweeper

    # ── Requests ──

    async def request(
        self,
        method: str,
        url: str,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
        options: RequestOptions | None = None,
    ) -> RequestResult[Any]:
        """
        Make an HTTP request through the resilient pipeline.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Path relative to the transport's base URL, or a full URL
            params: Query parameters
            body: JSON body for mutations
            headers: Additional headers
            options: Per-call configuration (defaults to the client's)

        Returns:
            RequestResult with response data

        Raises:
            SupersededError: A newer equivalent request replaced this one
            RequestTimeoutError: The overall timeout elapsed
            RateLimitError: The server kept rate limiting past the ceiling
            HttpStatusError / TransportError: The original failure, unwrapped
        """
        method = method.upper()
        opts = options or self.default_options
        is_read = method in READ_ONLY_METHODS
        cache_key = opts.cache_key or self._cache.generate_key(method, url, params, body)
        caching = is_read and not opts.no_cache and opts.cache.use_cache

        if caching:
            entry = self._cache.lookup(cache_key)
            if entry is not None:
                return RequestResult(
                    data=entry.payload.body,
                    status=entry.payload.status,
                    headers=dict(entry.payload.headers),
                    from_cache="memory",
                    cache_key=cache_key,
                )

        cancellable = (
            opts.cancellation.enabled
            if opts.cancellation.enabled is not None
            else is_read
        )
        cancel_key = opts.cancellation.key or cache_key
        signal: AbortSignal | None = None
        if cancellable:
            signal = self._coordinator.register(cancel_key)

        started = self._clock()
        attempts = 0

        async def exchange() -> TransportResponse:
            nonlocal attempts
            attempts += 1
            response = await self._transport.send(
                method, url, params=params, body=body, headers=headers
            )
            if response.status >= 400:
                raise HttpStatusError(
                    response.status,
                    method=method,
                    url=url,
                    headers=response.headers,
                    body=response.body,
                    service_id=self.service_id,
                )
            return response

        pipeline = self._with_timeout(
            self._run(exchange, method, opts),
            opts.timeout or self._timeout,
            started,
        )

        try:
            if signal is not None:
                response = await signal.guard(pipeline)
            else:
                response = await pipeline

        except SupersededError:
            self._log(f"SUPERSEDED: {method} {url}")
            raise

        except Exception as e:
            if is_read and opts.cache.stale_if_error and not opts.no_cache:
                stale = self._cache.peek(cache_key)
                if stale is not None:
                    logger.warning(
                        f"{method} {url} failed, returning stale data: {e}"
                    )
                    return RequestResult(
                        data=stale.payload.body,
                        status=stale.payload.status,
                        headers=dict(stale.payload.headers),
                        from_cache="stale",
                        is_stale=True,
                        cache_key=cache_key,
                        attempts=attempts,
                        elapsed=self._clock() - started,
                    )
            raise

        finally:
            if signal is not None:
                self._coordinator.release(cancel_key, signal)

        if is_read:
            if caching and response.ok and self._should_cache(
                opts, method, url, cache_key, response
            ):
                self._cache.store(
                    cache_key,
                    CachedPayload(
                        status=response.status,
                        body=response.body,
                        headers=dict(response.headers),
                    ),
                    ttl=opts.cache.ttl,
                )
        elif method in MUTATION_METHODS and response.ok:
            removed = self._cache.invalidate(resource_path(url))
            if removed:
                self._log(f"INVALIDATE: {removed} entries under {resource_path(url)}")
            await self._events.emit_success(response)
            if opts.on_success is not None:
                await observer_guard(opts.on_success)(response)

        return RequestResult(
            data=response.body,
            status=response.status,
            headers=dict(response.headers),
            cache_key=cache_key,
            attempts=attempts,
            elapsed=self._clock() - started,
        )

    async def fetch_latest(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> RequestResult[Any] | None:
        """Like request(), but a superseded call returns None instead of raising."""
        try:
            return await self.request(method, url, **kwargs)
        except SupersededError:
            return None

    async def get(self, url: str, params: Mapping[str, Any] | None = None, **kwargs: Any) -> RequestResult[Any]:
        return await self.request("GET", url, params=params, **kwargs)

    async def post(self, url: str, body: Any = None, **kwargs: Any) -> RequestResult[Any]:
        return await self.request("POST", url, body=body, **kwargs)

    async def put(self, url: str, body: Any = None, **kwargs: Any) -> RequestResult[Any]:
        return await self.request("PUT", url, body=body, **kwargs)

    async def patch(self, url: str, body: Any = None, **kwargs: Any) -> RequestResult[Any]:
        return await self.request("PATCH", url, body=body, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> RequestResult[Any]:
        return await self.request("DELETE", url, **kwargs)

    async def _run(
        self,
        exchange: Callable[[], Any],
        method: str,
        opts: RequestOptions,
    ) -> TransportResponse:
        """Rate limiter around retry orchestrator around the transport."""
        retry_options = opts.retry
        limited = opts.rate_limit.enabled and self._limiter.enabled

        # The limiter owns server rate-limit signals for limited calls
        if limited and 429 in retry_options.retryable_statuses:
            retry_options = retry_options.model_copy(
                update={"retryable_statuses": retry_options.retryable_statuses - {429}}
            )

        async def attempt() -> TransportResponse:
            return await self._retry.execute(exchange, method=method, options=retry_options)

        if limited:
            return await self._limiter.admit_or_queue(opts.rate_limit.key, attempt)
        return await attempt()

    async def _with_timeout(self, coro: Any, timeout: float | None, started: float) -> Any:
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            elapsed = self._clock() - started
            logger.warning(f"Request to '{self.service_id}' timed out after {timeout}s")
            raise RequestTimeoutError(
                timeout, elapsed=elapsed, service_id=self.service_id
            ) from e

    @staticmethod
    def _should_cache(
        opts: RequestOptions,
        method: str,
        url: str,
        cache_key: str,
        response: TransportResponse,
    ) -> bool:
        if opts.cache.should_cache is None:
            return True
        context = {
            "method": method,
            "url": url,
            "cache_key": cache_key,
            "status": response.status,
            "headers": response.headers,
            "body": response.body,
        }
        try:
            return bool(opts.cache.should_cache(context))
        except Exception as e:
            logger.opt(exception=e).warning(
                f"should_cache raised {type(e).__name__}, not caching {cache_key[:50]}"
            )
            return False

    # ── Lifecycle ──

    def start(self) -> None:
        """Start the periodic cache sweep. Needs a running event loop."""
        if not self._sweeper.is_running:
            self._sweeper.start()

    async def close(self) -> None:
        """Stop background work, cancel in-flight calls and close the transport."""
        self._sweeper.stop()
        self._coordinator.cancel_all()
        await self._limiter.close()
        await self._transport.close()
        logger.debug("ServiceClient closed")

    async def __aenter__(self) -> "ServiceClient":
        """Async context manager entry."""
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # ── Health and maintenance ──

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of all components."""
        return {
            "cache": self._cache.get_stats().to_dict(),
            "rate_limiter": self._limiter.get_stats().to_dict(),
            "cancellation": self._coordinator.get_stats().to_dict(),
            "sweeper": self._sweeper.get_status(),
            "in_flight": self._coordinator.in_flight_keys(),
        }

    def configure_endpoint(
        self, key: str, max_requests: int, window: timedelta
    ) -> None:
        """Add a per-endpoint rate limit window."""
        self._limiter.configure_endpoint(key, RateLimitRule(max_requests, window))

    def clear_cache(self, prefix: str | None = None) -> int:
        """Clear cache entries, optionally under a path prefix.

        Returns:
            Number of entries removed
        """
        if prefix:
            return self._cache.invalidate(prefix)
        return self._cache.clear()

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ServiceClient] {message}")
