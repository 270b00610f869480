"""
HTTP transport for Sofa SDK.

This module provides the low-level REST communication layer. Everything
above it speaks in terms of (method, path, body) and receives a status code
plus an already-parsed JSON body; nothing else in the SDK touches raw bytes.

Invariants:
    - Network failures surface as TransportError, never as httpx exceptions
    - Status codes >= 400 surface as RemoteError subclasses
    - Paths are relative to the transport's base URL

How to change safely:
    - Keep RestTransport the only seam the rest of the SDK depends on
    - Synchronous calls are reserved for the few operations documented as
      blocking (document count, first sequence lookup, server info)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx

from .errors import TransportError, error_for_status

logger = logging.getLogger(__name__)


@dataclass
class RestResponse:
    """A completed REST call.

    Attributes:
        status: HTTP status code
        body: Parsed JSON body (None when the response had no body)
        headers: Response headers
    """

    status: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class RestTransport(Protocol):
    """Interface the SDK drives for every server round trip."""

    @property
    def base_url(self) -> str: ...

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> RestResponse: ...

    def request_sync(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> RestResponse: ...

    def stream_lines(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


def _encode_params(params: dict[str, Any] | None) -> dict[str, str] | None:
    """Encode query options the way the server expects (JSON-ish scalars)."""
    if not params:
        return None
    encoded = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        else:
            encoded[key] = str(value)
    return encoded


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class HttpTransport:
    """httpx-backed RestTransport.

    Holds one async client for normal operations and one sync client for the
    operations that are documented as blocking.

    Example:
        >>> transport = HttpTransport("http://127.0.0.1:5984/")
        >>> response = await transport.request("GET", "mydb/")
        >>> response.body["doc_count"]
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        async_transport: httpx.AsyncBaseTransport | None = None,
        sync_transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Server base URL
            timeout: Per-request timeout in seconds
            async_transport: Optional httpx transport for the async client
            sync_transport: Optional httpx transport for the sync client
        """
        if not base_url.endswith("/"):
            base_url += "/"
        self._base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=async_transport
        )
        self._sync_client = httpx.Client(
            base_url=base_url, timeout=timeout, transport=sync_transport
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> RestResponse:
        """Send a request and wait for the parsed response.

        Raises:
            TransportError: If no response was received
            RemoteError: If the server answered with an error status
        """
        url = self._base_url + path
        try:
            response = await self._client.request(
                method, path, json=body, params=_encode_params(params)
            )
        except httpx.TransportError as e:
            raise TransportError(f"{method} {url} failed: {e}", url=url) from e
        return self._finish(method, url, response)

    def request_sync(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> RestResponse:
        """Blocking variant of request(); holds the calling thread."""
        url = self._base_url + path
        try:
            response = self._sync_client.request(
                method, path, json=body, params=_encode_params(params)
            )
        except httpx.TransportError as e:
            raise TransportError(f"{method} {url} failed: {e}", url=url) from e
        return self._finish(method, url, response)

    async def stream_lines(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        """GET a streaming endpoint and yield it line by line.

        Read timeouts are disabled; liveness is the job of server heartbeats.
        """
        url = self._base_url + path
        try:
            async with self._client.stream(
                "GET",
                path,
                params=_encode_params(params),
                timeout=httpx.Timeout(self._client.timeout.connect, read=None),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise error_for_status(
                        response.status_code, "GET", url, _parse_body(response)
                    )
                async for line in response.aiter_lines():
                    yield line
        except httpx.TransportError as e:
            raise TransportError(f"GET {url} stream failed: {e}", url=url) from e

    async def close(self) -> None:
        """Close both underlying clients."""
        await self._client.aclose()
        self._sync_client.close()

    def _finish(self, method: str, url: str, response: httpx.Response) -> RestResponse:
        body = _parse_body(response)
        logger.debug(
            "HTTP round trip",
            extra={"method": method, "url": url, "status": response.status_code},
        )
        if response.status_code >= 400:
            raise error_for_status(response.status_code, method, url, body)
        return RestResponse(
            status=response.status_code,
            body=body,
            headers=dict(response.headers),
        )
