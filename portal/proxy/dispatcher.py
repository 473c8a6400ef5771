"""Request dispatcher: the single ASGI entry point for every connection.

Per connection (HTTP request or WebSocket upgrade):

  RECEIVED
    → SANITIZED    inbound headers rewritten with the PERMISSIVE profile
    → CLASSIFIED   exactly one RouteClass, fixed precedence:
                     1. TUNNEL_PROTOCOL   tunnel.should_route(scope)
                     2. TUNNEL_WEBSOCKET  websocket upgrade, path ends with a suffix
                     3. APPLICATION       any other HTTP request
                     4. UNMATCHED         any other upgrade
    → ADMITTED → FORWARDED   one downstream handler owns the connection
    | REJECTED               admission refused (HTTP 429 / denial / close 1013)
    | CLOSED                 unmatched upgrade closed before acceptance

CORS runs in front of classification: preflights are answered before
admission and every HTTP answer carries the allow headers.

Admission applies to TUNNEL_PROTOCOL only. Handler exceptions stop here:
before the response starts the client gets a 500; after, the exchange is
left incomplete and the server drops it. Peer resets are logged at debug
level and never escalate.

``lifespan`` scopes are forwarded to the application, which owns startup and
shutdown.
"""

from __future__ import annotations

import contextlib
import enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.websockets import WebSocket

from portal.constants import CORS_ALLOWED_METHODS
from portal.context import PortalContext
from portal.errors import ErrorKind, is_connection_reset
from portal.proxy.headers import Profile, sanitize_raw_headers
from portal.proxy.responses import build_internal_error_response, build_rate_limited_response
from portal.tunnel.protocol import WS_CLOSE_TRY_AGAIN_LATER
from portal.utils.logger import clear_connection_id, get_logger, set_connection_id
from portal.utils.ulid import generate_ulid

logger = get_logger(__name__)

ASGIHandler = Callable[[Scope, Receive, Send], Awaitable[None]]

WS_CLOSE_INTERNAL_ERROR = 1011


class RouteClass(str, enum.Enum):
    TUNNEL_PROTOCOL = "tunnel_protocol"
    TUNNEL_WEBSOCKET = "tunnel_websocket"
    APPLICATION = "application"
    UNMATCHED = "unmatched"


class ConnectionState(str, enum.Enum):
    RECEIVED = "received"
    SANITIZED = "sanitized"
    CLASSIFIED = "classified"
    ADMITTED = "admitted"
    FORWARDED = "forwarded"
    REJECTED = "rejected"
    CLOSED = "closed"


TERMINAL_STATES: frozenset[ConnectionState] = frozenset(
    {ConnectionState.FORWARDED, ConnectionState.REJECTED, ConnectionState.CLOSED}
)

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.RECEIVED: frozenset({ConnectionState.SANITIZED}),
    ConnectionState.SANITIZED: frozenset({ConnectionState.CLASSIFIED}),
    ConnectionState.CLASSIFIED: frozenset(
        {ConnectionState.ADMITTED, ConnectionState.REJECTED, ConnectionState.CLOSED}
    ),
    ConnectionState.ADMITTED: frozenset({ConnectionState.FORWARDED}),
}


@dataclass
class DispatchOutcome:
    """What happened to one connection. Logged, never persisted."""

    connection_id: str
    route: Optional[RouteClass] = None
    state: ConnectionState = ConnectionState.RECEIVED
    handler: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    headers_sanitized: bool = False
    retry_after: Optional[int] = None

    def advance(self, state: ConnectionState) -> None:
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"invalid connection transition {self.state.value} -> {state.value}")
        self.state = state

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class _ResponseTracker:
    """Wraps ``send`` to remember how far the handler got."""

    def __init__(self, send: Send) -> None:
        self._send = send
        self.started = False
        self.accepted = False
        self.closed = False

    async def __call__(self, message: Message) -> None:
        kind = message["type"]
        if kind in ("http.response.start", "websocket.http.response.start"):
            self.started = True
        elif kind == "websocket.accept":
            self.started = self.accepted = True
        elif kind == "websocket.close":
            self.started = self.closed = True
        await self._send(message)


def _header(scope: Scope, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


class Dispatcher:
    """ASGI callable that routes each connection to exactly one handler.

    Args:
        context:     Shared collaborators (config, admission, tunnel handlers).
        application: ASGI app for everything not claimed by a tunnel route.
    """

    def __init__(self, context: PortalContext, application: ASGIApp) -> None:
        self.context = context
        self.application = application
        self._suffixes = tuple(context.config.routing.websocket_suffixes)
        self._cors = CORSMiddleware(
            self._dispatch,
            allow_origins=["*"],
            allow_methods=list(CORS_ALLOWED_METHODS),
            allow_headers=["*"],
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self.application(scope, receive, send)
            return
        await self._cors(scope, receive, send)

    async def _dispatch(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.handle(scope, receive, send)

    # ─── Classification ──────────────────────────────────────────────────────

    def classify(self, scope: Scope) -> RouteClass:
        """Assign *scope* to exactly one RouteClass (fixed precedence)."""
        if self.context.tunnel.should_route(scope):
            return RouteClass.TUNNEL_PROTOCOL
        if scope["type"] == "websocket":
            if self._is_websocket_upgrade(scope) and scope.get("path", "").endswith(self._suffixes):
                return RouteClass.TUNNEL_WEBSOCKET
            return RouteClass.UNMATCHED
        return RouteClass.APPLICATION

    @staticmethod
    def _is_websocket_upgrade(scope: Scope) -> bool:
        upgrade = _header(scope, b"upgrade")
        return upgrade is not None and "websocket" in upgrade.lower()

    def client_ip(self, scope: Scope) -> str:
        """Address admission is keyed on.

        With ``trust_proxy`` the leftmost X-Forwarded-For entry wins; otherwise
        (or when the header is absent) the raw peer address is used.
        """
        if self.context.config.server.trust_proxy:
            forwarded = _header(scope, b"x-forwarded-for")
            if forwarded:
                first = forwarded.split(",")[0].strip()
                if first:
                    return first
        client = scope.get("client")
        return client[0] if client else "unknown"

    # ─── Dispatch ────────────────────────────────────────────────────────────

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> DispatchOutcome:
        """Carry one connection from RECEIVED to a terminal state."""
        outcome = DispatchOutcome(connection_id=generate_ulid())
        set_connection_id(outcome.connection_id)
        try:
            scope = self._sanitize(scope, outcome)
            outcome.route = self.classify(scope)
            outcome.advance(ConnectionState.CLASSIFIED)

            if outcome.route is RouteClass.TUNNEL_PROTOCOL:
                await self._dispatch_tunnel(scope, receive, send, outcome)
            elif outcome.route is RouteClass.TUNNEL_WEBSOCKET:
                outcome.advance(ConnectionState.ADMITTED)
                await self._forward(
                    "tunnel_websocket", self.context.websocket.route_request,
                    scope, receive, send, outcome,
                )
            elif outcome.route is RouteClass.APPLICATION:
                outcome.advance(ConnectionState.ADMITTED)
                await self._forward("application", self.application, scope, receive, send, outcome)
            else:
                await self._close_unmatched(scope, send, outcome)

            self._log_outcome(scope, outcome)
            return outcome
        finally:
            clear_connection_id()

    def _sanitize(self, scope: Scope, outcome: DispatchOutcome) -> Scope:
        headers, changed = sanitize_raw_headers(scope.get("headers", []), Profile.PERMISSIVE)
        sanitized = dict(scope)
        sanitized["headers"] = headers
        if changed:
            outcome.headers_sanitized = True
            outcome.error_kind = ErrorKind.MALFORMED_HEADER
            logger.warning(
                "malformed_header_recovered",
                error_kind=ErrorKind.MALFORMED_HEADER.value,
                path=scope.get("path"),
            )
        outcome.advance(ConnectionState.SANITIZED)
        return sanitized

    async def _dispatch_tunnel(
        self, scope: Scope, receive: Receive, send: Send, outcome: DispatchOutcome
    ) -> None:
        client_ip = self.client_ip(scope)
        decision = self.context.admission.admit(client_ip)
        if not decision.allowed:
            outcome.advance(ConnectionState.REJECTED)
            outcome.error_kind = ErrorKind.RATE_LIMITED
            outcome.retry_after = decision.retry_after
            await self._reject(scope, receive, send, decision.retry_after)
            return

        outcome.advance(ConnectionState.ADMITTED)
        tunnel = self.context.tunnel
        if scope["type"] == "websocket":
            await self._forward("tunnel_upgrade", tunnel.route_upgrade, scope, receive, send, outcome)
        else:
            await self._forward("tunnel_request", tunnel.route_request, scope, receive, send, outcome)

    async def _reject(self, scope: Scope, receive: Receive, send: Send, retry_after: int) -> None:
        response = build_rate_limited_response(retry_after)
        if scope["type"] != "websocket":
            await response(scope, receive, send)
            return
        websocket = WebSocket(scope, receive, send)
        if "websocket.http.response" in scope.get("extensions", {}):
            await websocket.send_denial_response(response)
        else:
            await websocket.close(code=WS_CLOSE_TRY_AGAIN_LATER, reason="rate limited")

    async def _close_unmatched(self, scope: Scope, send: Send, outcome: DispatchOutcome) -> None:
        # Closing before accept: the server refuses the handshake itself.
        outcome.advance(ConnectionState.CLOSED)
        outcome.error_kind = ErrorKind.UPGRADE_MISMATCH
        await send({"type": "websocket.close", "code": 1000})

    async def _forward(
        self,
        name: str,
        handler: ASGIHandler,
        scope: Scope,
        receive: Receive,
        send: Send,
        outcome: DispatchOutcome,
    ) -> None:
        outcome.handler = name
        outcome.advance(ConnectionState.FORWARDED)
        tracker = _ResponseTracker(send)
        try:
            await handler(scope, receive, tracker)
        except Exception as exc:
            if is_connection_reset(exc):
                outcome.error_kind = ErrorKind.CONNECTION_RESET
                logger.debug("connection_reset", handler=name, error_type=type(exc).__name__)
                return

            outcome.error_kind = ErrorKind.DOWNSTREAM_FAILURE
            logger.error(
                "downstream_handler_failed",
                handler=name,
                path=scope.get("path"),
                error=str(exc),
                error_type=type(exc).__name__,
                response_started=tracker.started,
            )
            if scope["type"] == "websocket":
                if not tracker.closed:
                    code = WS_CLOSE_INTERNAL_ERROR if tracker.accepted else 1000
                    with contextlib.suppress(RuntimeError, OSError):
                        await send({"type": "websocket.close", "code": code})
                return
            if tracker.started:
                # Response already on the wire; an incomplete one is dropped by the server.
                return
            await build_internal_error_response()(scope, receive, send)

    def _log_outcome(self, scope: Scope, outcome: DispatchOutcome) -> None:
        fields = dict(
            route=outcome.route.value if outcome.route else None,
            state=outcome.state.value,
            handler=outcome.handler,
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
            path=scope.get("path"),
        )
        if outcome.state is ConnectionState.FORWARDED:
            logger.debug("connection_dispatched", **fields)
        else:
            logger.info("connection_dispatched", retry_after=outcome.retry_after, **fields)
