"""Outbound transports.

  base.py       — Transport / WebSocketChannel capability
  direct.py     — DirectTransport (httpx + websockets)
  relay.py      — RelayTransport (through an upstream relay)
  guard.py      — SafeTransport (header sanitizing with one strict retry)
"""

from portal.transport.base import Transport, TransportResponse, WebSocketChannel
from portal.transport.direct import DirectTransport
from portal.transport.guard import SafeTransport
from portal.transport.relay import RelayTransport

__all__ = [
    "DirectTransport",
    "RelayTransport",
    "SafeTransport",
    "Transport",
    "TransportResponse",
    "WebSocketChannel",
]
