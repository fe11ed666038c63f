"""
Transport protocol for ledger JSON-RPC calls.

Defines the seam where the HTTP implementation plugs in. The JSON-RPC
client depends on this protocol, not on httpx directly, so tests can
swap in a fake without touching parsing logic.

Concrete implementations:
    - HttpxTransport (default, uses httpx.AsyncClient)
    - FakeTransport (tests, returns canned responses)

Failure contract:
    Transports raise RpcError for anything that prevents a parsed JSON
    body from coming back. Connection and timeout failures map to
    UNAVAILABLE, 5xx to INTERNAL, other HTTP errors to INVALID_ARGUMENT,
    and an undecodable body to UNKNOWN.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx

from nexus_pay.errors import RpcError, RpcStatus

# Header carrying the ledger version the caller would like to be served.
DESIRED_VERSION_HEADER = "X-Desired-Ledger-Version"

# Header carrying the app index on every request.
APP_INDEX_HEADER = "X-App-Index"


@runtime_checkable
class JsonRpcTransport(Protocol):
    """Async transport for JSON-RPC POST requests."""

    async def post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a JSON-RPC request and return the parsed response.

        Raises:
            RpcError: On transport-level failures.
        """
        ...


def _status_for(code: int) -> RpcStatus:
    if code >= 500:
        return RpcStatus.INTERNAL
    if code == 404:
        return RpcStatus.NOT_FOUND
    return RpcStatus.INVALID_ARGUMENT


class HttpxTransport:
    """Default transport using httpx.AsyncClient.

    A single AsyncClient is created lazily and reused across calls so
    connections are pooled. Call ``aclose()`` when done.

    Args:
        timeout: Per-request timeout in seconds.
        headers: Extra headers sent on every request.
        client: Pre-built AsyncClient (mainly for tests).
    """

    def __init__(
        self,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, headers=self._headers)
        return self._client

    async def post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send JSON-RPC request via httpx."""
        try:
            response = await self._get_client().post(url, json=payload, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RpcError(_status_for(e.response.status_code), str(e)) from e
        except httpx.TransportError as e:
            raise RpcError(RpcStatus.UNAVAILABLE, str(e)) from e

        try:
            result: dict[str, Any] = response.json()
        except ValueError as e:
            raise RpcError(RpcStatus.UNKNOWN, "response body is not JSON") from e
        return result

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
