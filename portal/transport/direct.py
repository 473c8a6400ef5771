"""Direct outbound transport: TLS terminated in-process.

HTTP exchanges go through one shared ``httpx.AsyncClient`` (connection
pooling, certificate verification); WebSocket streams go through the
``websockets`` library. The client is created in init() and never per request.

httpx encodes header strings as ASCII, so obs-text (0x80–0xFF) that survives
the permissive profile is rejected here. Those failures, and h11's
``Illegal header value`` errors, surface as TransportInvalidHeader so
SafeTransport can take its strict retry.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Sequence

import httpx
import websockets

from portal.constants import (
    RELAY_POOL_KEEPALIVE_EXPIRY_S,
    RELAY_POOL_MAX_CONNECTIONS,
    RELAY_TIMEOUT_S,
)
from portal.errors import TransportInvalidHeader, is_invalid_header_error
from portal.proxy.headers import HeaderMap, collect_header_pairs, expand_header_pairs
from portal.transport.base import (
    CloseHandler,
    ErrorHandler,
    MessageHandler,
    OpenHandler,
    Transport,
    TransportResponse,
    WebSocketChannel,
)
from portal.transport.websocket import open_websocket


def create_http_client() -> httpx.AsyncClient:
    """Create the pooled httpx.AsyncClient used for outbound requests.

    Redirects are not followed: a 3xx is passed back to the proxied page,
    which resolves it itself.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=RELAY_POOL_MAX_CONNECTIONS,
            max_keepalive_connections=RELAY_POOL_MAX_CONNECTIONS,
            keepalive_expiry=RELAY_POOL_KEEPALIVE_EXPIRY_S,
        ),
        timeout=httpx.Timeout(RELAY_TIMEOUT_S),
        follow_redirects=False,
    )


async def send_http(
    client: httpx.AsyncClient,
    url: str,
    method: str,
    body: Optional[bytes],
    headers: HeaderMap,
) -> TransportResponse:
    """Perform one buffered exchange on *client*, mapping header rejections.

    Raises:
        TransportInvalidHeader: httpx or h11 refused a header name or value.
    """
    try:
        response = await client.request(
            method,
            url,
            content=body,
            headers=expand_header_pairs(headers),
        )
    except UnicodeEncodeError as exc:
        raise TransportInvalidHeader(f"Invalid header value: {exc}") from exc
    except httpx.LocalProtocolError as exc:
        if is_invalid_header_error(exc):
            raise TransportInvalidHeader(f"Invalid header value: {exc}") from exc
        raise

    return TransportResponse(
        status=response.status_code,
        status_text=response.reason_phrase,
        headers=collect_header_pairs(response.headers.multi_items()),
        body=response.content,
    )


class DirectTransport(Transport):
    """Transport that connects straight to the target."""

    def __init__(
        self,
        client_factory: Callable[[], httpx.AsyncClient] = create_http_client,
    ) -> None:
        self._client_factory = client_factory
        self._client: Optional[httpx.AsyncClient] = None
        self.ready = False

    async def init(self) -> None:
        if self._client is None:
            self._client = self._client_factory()
        self.ready = True

    async def meta(self) -> dict[str, Any]:
        return {
            "transport": "direct",
            "httpx": httpx.__version__,
            "websockets": websockets.__version__,
        }

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("DirectTransport.init() has not been called")
        return self._client

    async def request(
        self,
        target: str,
        method: str,
        body: Optional[bytes],
        headers: HeaderMap,
        cancel: Optional[asyncio.Event] = None,
    ) -> TransportResponse:
        return await send_http(self._require_client(), target, method, body, headers)

    async def connect(
        self,
        url: str,
        protocols: Sequence[str],
        headers: HeaderMap,
        on_open: OpenHandler,
        on_message: MessageHandler,
        on_close: CloseHandler,
        on_error: ErrorHandler,
    ) -> WebSocketChannel:
        return await open_websocket(
            url, protocols, headers, on_open, on_message, on_close, on_error
        )

    async def close(self) -> None:
        self.ready = False
        if self._client is not None:
            await self._client.aclose()
            self._client = None
