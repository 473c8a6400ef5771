"""Downstream handler selection.

Handler selection logic:
  - handlers.tunnel unset    → HttpRelayTunnel on routing.tunnel_prefix
  - handlers.websocket unset → UnavailableWebSocketServer (close 1013)
  - an import string (``package.module:attribute``) selects a custom handler.
    A class or factory function is called with the Config; any other object
    is used as-is. The result must satisfy the matching Protocol.

Outbound transport (used by the built-in relay):
  - handlers.relay_url set   → RelayTransport(relay_url)
  - otherwise                → DirectTransport
  Either one is wrapped in SafeTransport.

A handler that cannot be imported or does not satisfy its Protocol is a
configuration error: the message goes to stderr and the process exits 1.
"""

from __future__ import annotations

import sys
from typing import Any, NoReturn, Optional

from uvicorn.importer import ImportFromStringError, import_from_string

from portal.config import Config
from portal.transport.base import Transport
from portal.transport.direct import DirectTransport
from portal.transport.guard import SafeTransport
from portal.transport.relay import RelayTransport
from portal.tunnel.protocol import (
    TunnelServer,
    TunnelWebSocketServer,
    UnavailableWebSocketServer,
)
from portal.tunnel.relay import HttpRelayTunnel
from portal.utils.logger import get_logger

logger = get_logger(__name__)


def create_transport(config: Config) -> SafeTransport:
    """Build the guarded outbound transport for the built-in relay."""
    inner: Transport
    if config.handlers.relay_url:
        inner = RelayTransport(config.handlers.relay_url)
        logger.info("transport_selected", transport="RelayTransport", relay_url=config.handlers.relay_url)
    else:
        inner = DirectTransport()
        logger.info("transport_selected", transport="DirectTransport")
    return SafeTransport(inner)


def create_tunnel_server(config: Config, transport: Optional[Transport] = None) -> TunnelServer:
    """Return the tunnel-protocol handler selected by *config*."""
    if config.handlers.tunnel is None:
        if transport is None:
            transport = create_transport(config)
        handler: Any = HttpRelayTunnel(config.routing.tunnel_prefix, transport=transport)
    else:
        handler = _load_handler("handlers.tunnel", config.handlers.tunnel, config)

    if not isinstance(handler, TunnelServer):
        _fail(f"handlers.tunnel: {type(handler).__name__} does not implement TunnelServer")
    logger.info("tunnel_handler_selected", handler=type(handler).__name__)
    return handler


def create_websocket_server(config: Config) -> TunnelWebSocketServer:
    """Return the tunnel-websocket handler selected by *config*."""
    if config.handlers.websocket is None:
        handler: Any = UnavailableWebSocketServer()
    else:
        handler = _load_handler("handlers.websocket", config.handlers.websocket, config)

    if not isinstance(handler, TunnelWebSocketServer):
        _fail(
            f"handlers.websocket: {type(handler).__name__} does not implement "
            "TunnelWebSocketServer"
        )
    logger.info("websocket_handler_selected", handler=type(handler).__name__)
    return handler


def _load_handler(setting: str, import_str: str, config: Config) -> Any:
    try:
        target = import_from_string(import_str)
    except ImportFromStringError as exc:
        _fail(f"{setting}: {exc}")
    if isinstance(target, type) or (callable(target) and not _is_handler(target)):
        return target(config)
    return target


def _is_handler(obj: Any) -> bool:
    return isinstance(obj, (TunnelServer, TunnelWebSocketServer))


def _fail(message: str) -> NoReturn:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)
