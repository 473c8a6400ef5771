"""PortalContext: the collaborators shared by the dispatcher and the application.

Built synchronously by build_context() before the listener starts; nothing in
Portal is a process-wide singleton.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from portal.config import Config
from portal.proxy.admission import AdmissionController
from portal.transport.base import Transport
from portal.tunnel.factory import (
    create_transport,
    create_tunnel_server,
    create_websocket_server,
)
from portal.tunnel.protocol import TunnelServer, TunnelWebSocketServer


@dataclass
class PortalContext:
    config: Config
    admission: AdmissionController
    tunnel: TunnelServer
    websocket: TunnelWebSocketServer
    # Outbound transport owned by the application lifespan; None when a
    # custom tunnel handler manages its own I/O.
    transport: Optional[Transport] = None


def build_context(config: Config) -> PortalContext:
    """Construct every collaborator from *config*.

    Raises:
        SystemExit(1): A configured handler cannot be loaded.
    """
    transport = create_transport(config) if config.handlers.tunnel is None else None
    return PortalContext(
        config=config,
        admission=AdmissionController(config.admission),
        tunnel=create_tunnel_server(config, transport),
        websocket=create_websocket_server(config),
        transport=transport,
    )
