"""Relay transport: forwards through another Portal-compatible HTTP relay.

Requests are sent to ``{relay}v1/`` carrying the real target in X-Bare-URL;
WebSocket streams connect to ``{ws relay}v1/?url=<target>``. The relay's own
manifest (``GET {relay}``) is returned by meta().
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Sequence
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from portal.constants import RELAY_URL_HEADER
from portal.proxy.headers import HeaderMap
from portal.transport.base import (
    CloseHandler,
    ErrorHandler,
    MessageHandler,
    OpenHandler,
    Transport,
    TransportResponse,
    WebSocketChannel,
)
from portal.transport.direct import create_http_client, send_http
from portal.transport.websocket import open_websocket


def _websocket_base(relay_url: str) -> str:
    parts = urlsplit(relay_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path, "", ""))


class RelayTransport(Transport):
    """Transport that tunnels every exchange through an upstream relay.

    Args:
        relay_url: Base URL of the upstream relay, e.g. ``https://relay.example/bare/``.
                   A trailing slash is added when missing.
    """

    def __init__(
        self,
        relay_url: str,
        client_factory: Callable[[], httpx.AsyncClient] = create_http_client,
    ) -> None:
        if not relay_url.endswith("/"):
            relay_url += "/"
        self.relay_url = relay_url
        self._client_factory = client_factory
        self._client: Optional[httpx.AsyncClient] = None
        self.ready = False

    async def init(self) -> None:
        if self._client is None:
            self._client = self._client_factory()
        self.ready = True

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("RelayTransport.init() has not been called")
        return self._client

    async def meta(self) -> dict[str, Any]:
        response = await self._require_client().get(self.relay_url)
        response.raise_for_status()
        return response.json()

    async def request(
        self,
        target: str,
        method: str,
        body: Optional[bytes],
        headers: HeaderMap,
        cancel: Optional[asyncio.Event] = None,
    ) -> TransportResponse:
        forwarded = dict(headers)
        forwarded[RELAY_URL_HEADER] = target
        return await send_http(
            self._require_client(),
            f"{self.relay_url}v1/",
            method,
            body,
            forwarded,
        )

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
        relay_ws = f"{_websocket_base(self.relay_url)}v1/?url={quote(url, safe='')}"
        return await open_websocket(
            relay_ws, protocols, headers, on_open, on_message, on_close, on_error
        )

    async def close(self) -> None:
        self.ready = False
        if self._client is not None:
            await self._client.aclose()
            self._client = None
