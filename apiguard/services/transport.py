"""
Transport - the single "send" primitive the request layer wraps.

send() resolves with status/headers/body for every status code and raises
TransportError only when no response was received.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx
from loguru import logger

from apiguard.services.errors import TransportError


@dataclass(frozen=True)
class TransportResponse:
    """One HTTP exchange's outcome."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(ABC):
    """Abstract one-exchange HTTP primitive."""

    @abstractmethod
    async def send(
        self,
        method: str,
        url: str,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> TransportResponse:
        """Perform one exchange."""
        ...

    async def close(self) -> None:
        """Release underlying resources."""


class HttpxTransport(Transport):
    """
    Transport backed by a lazily created httpx.AsyncClient.

    Usage:
        transport = HttpxTransport(base_url="https://api.example.com/v1")
        response = await transport.send("GET", "/venues", params={"page": 1})
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 10.0,
        headers: Mapping[str, str] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._http_transport = http_transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers,
                follow_redirects=True,
                transport=self._http_transport,
            )
        return self._http_client

    async def send(
        self,
        method: str,
        url: str,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> TransportResponse:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        try:
            response = await client.request(
                method=method,
                url=url,
                params=dict(params) if params else None,
                headers=dict(headers) if headers else None,
                json=body,
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Timed out after {self._timeout}s: {e}", method=method, url=url
            ) from e
        except httpx.RequestError as e:
            raise TransportError(str(e) or type(e).__name__, method=method, url=url) from e

        return TransportResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=self._decode_body(response),
        )

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug("HttpxTransport closed")
