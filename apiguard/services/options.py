"""
Per-call configuration, one validated model per concern.
"""

from datetime import timedelta
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator

IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "DELETE", "HEAD", "OPTIONS"})
READ_ONLY_METHODS = frozenset({"GET", "HEAD"})
MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class CacheOptions(BaseModel):
    """Caching behaviour for a single call."""

    model_config = ConfigDict(frozen=True)

    use_cache: bool = True
    ttl: timedelta | None = None
    # should_cache(context) -> bool, context holds method/url/status/body
    should_cache: Callable[[dict[str, Any]], bool] | None = None
    # Serve the last stored payload when the live attempt fails
    stale_if_error: bool = False

    @field_validator("ttl")
    @classmethod
    def _positive_ttl(cls, value: timedelta | None) -> timedelta | None:
        if value is not None and value.total_seconds() <= 0:
            raise ValueError("ttl must be positive")
        return value


class RetryOptions(BaseModel):
    """Retry Orchestrator settings for a single call."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    retry_if: Callable[[BaseException], bool] | None = None
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES
    idempotent_methods: frozenset[str] = IDEMPOTENT_METHODS
    # on_retry(attempt_number, delay, error), observability only
    on_retry: Callable[[int, float, BaseException], Any] | None = None


class RateLimitOptions(BaseModel):
    """Rate Limiter settings for a single call."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    key: str = "global"


class CancellationOptions(BaseModel):
    """Cancellation Coordinator settings for a single call.

    enabled=None applies the default: read-only calls only.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool | None = None
    key: str | None = None


class RequestOptions(BaseModel):
    """Everything a collaborator can configure for one request."""

    model_config = ConfigDict(frozen=True)

    cache_key: str | None = None
    no_cache: bool = False
    cache: CacheOptions = Field(default_factory=CacheOptions)
    retry: RetryOptions = Field(default_factory=RetryOptions)
    rate_limit: RateLimitOptions = Field(default_factory=RateLimitOptions)
    cancellation: CancellationOptions = Field(default_factory=CancellationOptions)
    timeout: float | None = Field(default=None, gt=0)
    on_success: Callable[[Any], Any] | None = None

    @field_validator("retry", mode="before")
    @classmethod
    def _retry_opt_out(cls, value: Any) -> Any:
        if value is False:
            return RetryOptions(enabled=False)
        if value is True:
            return RetryOptions()
        return value
