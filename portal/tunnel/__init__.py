"""Downstream tunnel handlers.

Layout:
    protocol.py — TunnelServer / TunnelWebSocketServer interfaces + unavailable stub
    relay.py    — HttpRelayTunnel, the built-in tunnel-protocol handler
    factory.py  — handler selection from config import strings
"""

from portal.tunnel.protocol import (
    TunnelServer,
    TunnelWebSocketServer,
    UnavailableWebSocketServer,
)
from portal.tunnel.relay import HttpRelayTunnel

__all__ = [
    "HttpRelayTunnel",
    "TunnelServer",
    "TunnelWebSocketServer",
    "UnavailableWebSocketServer",
]
