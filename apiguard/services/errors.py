"""
Request layer exceptions.

Every error carries enough structure (kind, status, retry count, elapsed
time) for callers to decide what to show; none of them render messages
for end users.
"""

from typing import Any, Mapping

from apiguard.utils import parse_retry_after


class ServiceError(Exception):
    """Base exception for request layer errors."""

    kind = "service"

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status: int | None = None,
    ):
        self.service_id = service_id
        self.status = status
        self.attempts: int = 0
        self.retry_count: int = 0
        self.elapsed: float | None = None
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Structured view for collaborators and logs."""
        return {
            "kind": self.kind,
            "message": str(self),
            "service_id": self.service_id,
            "status": self.status,
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "elapsed": self.elapsed,
        }


class TransportError(ServiceError):
    """No response was received (connection, read timeout, protocol)."""

    kind = "transport"

    def __init__(
        self,
        message: str,
        method: str | None = None,
        url: str | None = None,
        service_id: str | None = None,
    ):
        self.method = method
        self.url = url
        super().__init__(message, service_id=service_id)


class HttpStatusError(ServiceError):
    """The server answered with a status >= 400."""

    kind = "http_status"

    def __init__(
        self,
        status: int,
        method: str | None = None,
        url: str | None = None,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        service_id: str | None = None,
    ):
        self.method = method
        self.url = url
        self.headers = dict(headers or {})
        self.body = body
        super().__init__(
            f"HTTP {status} for {method or '?'} {url or '?'}",
            service_id=service_id,
            status=status,
        )

    @property
    def retry_after(self) -> float | None:
        """Server-provided Retry-After hint in seconds, if any."""
        for name, value in self.headers.items():
            if name.lower() == "retry-after":
                return parse_retry_after(value)
        return None


class RateLimitError(ServiceError):
    """Rate limit still exceeded after the configured re-queue attempts."""

    kind = "rate_limit"

    def __init__(
        self,
        key: str,
        retry_after: float | None = None,
        retry_count: int = 0,
        service_id: str | None = None,
    ):
        self.key = key
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for key '{key}' after {retry_count} re-queues"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id, status=429)
        self.retry_count = retry_count


class SupersededError(ServiceError):
    """A newer equivalent request replaced this one; callers should ignore it."""

    kind = "superseded"

    def __init__(self, key: str, reason: str = "superseded by a newer request"):
        self.key = key
        self.reason = reason
        super().__init__(f"Request '{key}' {reason}")


class RequestTimeoutError(ServiceError):
    """The overall ceiling elapsed before the call (and its retries) finished."""

    kind = "timeout"

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        service_id: str | None = None,
    ):
        self.timeout = timeout
        super().__init__(
            f"Request timed out after {timeout}s",
            service_id=service_id,
        )
        self.elapsed = elapsed
