"""Health endpoint for Portal.

  GET /health — 503 before ``app.state.ready`` is set (during lifespan
                startup), 200 with routing and admission status afterwards.

/health is served by the application handler, so it is reachable only through
the APPLICATION route class; it is never counted by admission.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from portal.context import PortalContext

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok",
          "tunnel_prefix": "/bare/",
          "websocket_suffixes": ["/wisp/", "/adblock/"],
          "transport_ready": true | null,
          "admission": {"tracked": 12, "blocked": 0}
        }

    Response body (503):
        {"status": "starting", "message": "Portal is starting up..."}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "Portal is starting up..."},
        )

    context: PortalContext = request.app.state.context
    stats = context.admission.stats()
    routing = context.config.routing

    return {
        "status": "ok",
        "tunnel_prefix": routing.tunnel_prefix,
        "websocket_suffixes": list(routing.websocket_suffixes),
        # null when a custom tunnel handler owns its own transport
        "transport_ready": context.transport.ready if context.transport is not None else None,
        "admission": {"tracked": stats.tracked, "blocked": stats.blocked},
    }
