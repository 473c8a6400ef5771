"""Interfaces the dispatcher uses to reach tunnel backends.

Both handlers are ASGI-level collaborators: they receive the (already
sanitized) scope plus the connection's receive/send channels and own the
connection from then on.

  TunnelServer            — tunnel protocol: plain requests and upgrades under
                            a registered prefix
  TunnelWebSocketServer   — stream multiplexer reached through upgrades whose
                            path ends with a registered suffix
  UnavailableWebSocketServer — stand-in used when no multiplexer is configured
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from starlette.types import Receive, Scope, Send

from portal.utils.logger import get_logger

logger = get_logger(__name__)

# RFC 6455 close code "Try Again Later".
WS_CLOSE_TRY_AGAIN_LATER = 1013


@runtime_checkable
class TunnelServer(Protocol):
    """Tunnel-protocol handler."""

    def should_route(self, scope: Scope) -> bool:
        """Return True if this handler claims the request or upgrade."""
        ...

    async def route_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Serve a plain HTTP request."""
        ...

    async def route_upgrade(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Serve a WebSocket upgrade."""
        ...


@runtime_checkable
class TunnelWebSocketServer(Protocol):
    """Tunnel-websocket (stream multiplexer) handler."""

    async def route_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        ...


class UnavailableWebSocketServer:
    """Refuses every upgrade with close code 1013 (try again later).

    Selected when ``handlers.websocket`` is not configured, so a matching
    upgrade is still answered by its own route class instead of falling
    through to the application.
    """

    async def route_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        message = await receive()
        if message["type"] != "websocket.connect":
            return
        logger.warning("websocket_backend_unavailable", path=scope.get("path"))
        await send(
            {
                "type": "websocket.close",
                "code": WS_CLOSE_TRY_AGAIN_LATER,
                "reason": "websocket backend unavailable",
            }
        )


assert isinstance(UnavailableWebSocketServer(), TunnelWebSocketServer), (
    "UnavailableWebSocketServer does not satisfy TunnelWebSocketServer"
)
