"""HttpRelayTunnel: the built-in tunnel-protocol handler.

Serves everything under the tunnel prefix (``/bare/`` by default):

  GET <prefix>              → JSON manifest (versions, language, project)
  <method> <prefix>...      → relay: target from X-Bare-URL, performed through
                              the guarded outbound transport
  upgrade <prefix>...?url=  → WebSocket relay to a ws:// or wss:// target

Failure mode separation:
  - missing / invalid target          → HTTP 400 (code ``bad_target``)
  - target unreachable, timed out,
    or headers rejected after retry   → HTTP 502
  - target 4xx/5xx                    → passed through as-is
  - client went away mid-request      → outbound request cancelled, nothing sent

Every outbound exchange goes through the transport handed in at construction.
The default factory wraps it in SafeTransport, so the permissive/strict header
fallback applies to relayed traffic.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Optional, Sequence, Union
from urllib.parse import urlsplit

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocket, WebSocketDisconnect
from websockets.exceptions import WebSocketException

import portal
from portal.constants import DEFAULT_TUNNEL_PREFIX, RELAY_URL_HEADER
from portal.errors import ErrorKind, RelayTargetError, RequestCancelled, TransportInvalidHeader
from portal.proxy.headers import (
    HeaderValue,
    Profile,
    build_relay_request_headers,
    build_relay_response_headers,
    sanitize_headers,
)
from portal.proxy.responses import (
    build_bad_target_response,
    build_upstream_unavailable_response,
)
from portal.transport.base import Transport, WebSocketChannel
from portal.utils.logger import get_logger

logger = get_logger(__name__)

RELAY_PROTOCOL_VERSIONS: tuple[str, ...] = ("v1",)

_HTTP_SCHEMES: tuple[str, ...] = ("http", "https")
_WS_SCHEMES: tuple[str, ...] = ("ws", "wss")

# Generated by the outbound WebSocket client itself; never forwarded.
_HANDSHAKE_HEADER_PREFIX = "sec-websocket-"

# Close codes that must not appear in a close frame (RFC 6455 §7.4.1).
_RESERVED_CLOSE_CODES: frozenset[int] = frozenset({1005, 1006, 1015})

_UPSTREAM_ERRORS = (httpx.TransportError, OSError, TransportInvalidHeader)


def parse_target(value: Optional[str], schemes: Sequence[str]) -> str:
    """Validate a relay target URL.

    Raises:
        RelayTargetError: *value* is missing, not absolute, or uses a scheme
                          outside *schemes*.
    """
    if not value:
        raise RelayTargetError("missing relay target")
    parts = urlsplit(value)
    if parts.scheme.lower() not in schemes or not parts.netloc:
        raise RelayTargetError(
            f"relay target must be an absolute {'/'.join(schemes)} URL"
        )
    return value


def _outbound_close_code(code: int) -> int:
    if code == 1006:
        return 1011
    if code in _RESERVED_CLOSE_CODES:
        return 1000
    return code


async def _watch_disconnect(receive: Receive, cancel: asyncio.Event) -> None:
    """Set *cancel* once the client disconnects (body already consumed)."""
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            cancel.set()
            return


class HttpRelayTunnel:
    """Tunnel-protocol handler that relays through an outbound Transport.

    Args:
        prefix:    Path prefix this handler claims, e.g. ``/bare/``.
        transport: Outbound transport; initialized by the application lifespan.
    """

    def __init__(self, prefix: str = DEFAULT_TUNNEL_PREFIX, *, transport: Transport) -> None:
        self.prefix = prefix
        self.transport = transport

    def should_route(self, scope: Scope) -> bool:
        return scope.get("path", "").startswith(self.prefix)

    def manifest(self) -> dict[str, Any]:
        return {
            "versions": list(RELAY_PROTOCOL_VERSIONS),
            "language": "Python",
            "project": {
                "name": "portal",
                "description": "Portal HTTP relay",
                "version": portal.__version__,
            },
        }

    # ─── HTTP relay ──────────────────────────────────────────────────────────

    async def route_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        response = await self._relay_http(request, receive)
        if response is not None:
            await response(scope, receive, send)

    async def _relay_http(self, request: Request, receive: Receive) -> Optional[Response]:
        if request.method == "GET" and request.url.path in (self.prefix, self.prefix.rstrip("/")):
            return JSONResponse(self.manifest())

        try:
            target = parse_target(request.headers.get(RELAY_URL_HEADER), _HTTP_SCHEMES)
        except RelayTargetError as exc:
            logger.info("relay_bad_target", path=request.url.path, error=str(exc))
            return build_bad_target_response(str(exc))

        headers = build_relay_request_headers(request.headers.items())
        body = await request.body()

        cancel = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(receive, cancel))
        try:
            upstream = await self.transport.request(
                target, request.method, body or None, headers, cancel
            )
        except RequestCancelled:
            logger.debug("relay_cancelled", target=target, method=request.method)
            return None
        except _UPSTREAM_ERRORS as exc:
            logger.warning(
                "relay_target_unavailable",
                target=target,
                error_kind=(
                    ErrorKind.TRANSPORT_INVALID_HEADER.value
                    if isinstance(exc, TransportInvalidHeader)
                    else ErrorKind.DOWNSTREAM_FAILURE.value
                ),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return build_upstream_unavailable_response(reason=type(exc).__name__)
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        logger.info(
            "request_relayed",
            method=request.method,
            target=target,
            status_code=upstream.status,
        )

        response = Response(content=upstream.body, status_code=upstream.status)
        safe_headers = sanitize_headers(upstream.headers, Profile.PERMISSIVE)
        response.raw_headers.extend(
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in build_relay_response_headers(safe_headers)
        )
        return response

    # ─── WebSocket relay ─────────────────────────────────────────────────────

    async def route_upgrade(self, scope: Scope, receive: Receive, send: Send) -> None:
        websocket = WebSocket(scope, receive, send)
        try:
            target = parse_target(websocket.query_params.get("url"), _WS_SCHEMES)
        except RelayTargetError as exc:
            logger.info("relay_bad_target", path=scope.get("path"), error=str(exc))
            await websocket.close(code=1008, reason="bad relay target")
            return

        headers: dict[str, HeaderValue] = {
            name: value
            for name, value in build_relay_request_headers(websocket.headers.items()).items()
            if not name.lower().startswith(_HANDSHAKE_HEADER_PREFIX)
        }
        protocols = list(scope.get("subprotocols", []))

        upstream_closed = asyncio.Event()
        close_state: dict[str, Any] = {"code": 1000, "reason": ""}

        async def on_open(subprotocol: Optional[str]) -> None:
            await websocket.accept(subprotocol=subprotocol)

        async def on_message(data: Union[str, bytes]) -> None:
            if isinstance(data, bytes):
                await websocket.send_bytes(data)
            else:
                await websocket.send_text(data)

        async def on_close(code: int, reason: str) -> None:
            close_state.update(code=_outbound_close_code(code), reason=reason)
            upstream_closed.set()

        async def on_error(exc: BaseException) -> None:
            close_state.update(code=1011, reason="")
            upstream_closed.set()

        try:
            channel = await self.transport.connect(
                target, protocols, headers, on_open, on_message, on_close, on_error
            )
        except (TransportInvalidHeader, OSError, WebSocketException, asyncio.TimeoutError) as exc:
            logger.warning(
                "relay_websocket_unavailable",
                target=target,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await websocket.close(code=1011)
            return

        logger.info("websocket_relayed", target=target, subprotocol=channel.subprotocol)
        await self._pump(websocket, channel, upstream_closed, close_state)

    async def _pump(
        self,
        websocket: WebSocket,
        channel: WebSocketChannel,
        upstream_closed: asyncio.Event,
        close_state: dict[str, Any],
    ) -> None:
        """Forward client frames upstream until either side closes."""
        client_task = asyncio.create_task(self._forward_client(websocket, channel))
        upstream_task = asyncio.create_task(upstream_closed.wait())
        try:
            done, _ = await asyncio.wait(
                {client_task, upstream_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            upstream_task.cancel()

        if client_task in done:
            code = client_task.result()
            await channel.close(code=_outbound_close_code(code))
            return

        client_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
            await client_task
        await channel.close()
        with contextlib.suppress(RuntimeError):
            await websocket.close(code=close_state["code"], reason=close_state["reason"])

    @staticmethod
    async def _forward_client(websocket: WebSocket, channel: WebSocketChannel) -> int:
        """Relay client frames; return the client's close code."""
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return int(message.get("code", 1000))
            if message.get("bytes") is not None:
                await channel.send(message["bytes"])
            elif message.get("text") is not None:
                await channel.send(message["text"])
