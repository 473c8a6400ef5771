"""Portal application handler: FastAPI app + lifespan lifecycle.

Everything the dispatcher classifies as APPLICATION lands here:

  /health   — readiness + admission stats (portal/health.py)
  /404      — the not-found page
  /*        — static site assets from ``application.static_dir`` (if present)

Any other miss is answered with a 302 redirect to /404.

Startup sequence:
  1. admission reclaimer task   → app.state.reclaimer
  2. outbound transport init()  (built-in relay only)
  3. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel reclaimer → close transport
"""

from __future__ import annotations

import asyncio
import os
import pathlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response
from starlette.types import Scope

import portal
from portal.context import PortalContext
from portal.health import router as health_router
from portal.utils.logger import get_logger

logger = get_logger(__name__)


class SiteFiles(StaticFiles):
    """StaticFiles whose misses always raise, so the app-level 404 redirect applies.

    Plain StaticFiles(html=True) answers a miss with ``404.html`` directly.
    """

    async def get_response(self, path: str, scope: Scope) -> Response:
        response = await super().get_response(path, scope)
        if response.status_code == 404:
            raise StarletteHTTPException(status_code=404)
        return response


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start background work and the outbound transport; tear down in reverse."""
    context: PortalContext = app.state.context
    logger.info("Portal starting up...")

    # ── Step 1: Admission reclaimer ──────────────────────────────────────────
    reclaimer: asyncio.Task[None] = asyncio.create_task(context.admission.run_reclaimer())
    app.state.reclaimer = reclaimer

    # ── Step 2: Outbound transport ───────────────────────────────────────────
    if context.transport is not None:
        await context.transport.init()
        logger.info("Outbound transport ready", transport=type(context.transport).__name__)

    # ── Step 3: Mark as ready ────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "Portal ready",
        tunnel_prefix=context.config.routing.tunnel_prefix,
        websocket_suffixes=context.config.routing.websocket_suffixes,
    )

    yield

    # ── Shutdown (reverse order) ─────────────────────────────────────────────
    logger.info("Portal shutting down...")
    app.state.ready = False

    if not reclaimer.done():
        reclaimer.cancel()
        try:
            await reclaimer
        except asyncio.CancelledError:
            pass

    if context.transport is not None:
        try:
            await context.transport.close()
            logger.info("Outbound transport closed")
        except Exception as exc:
            logger.warning("Outbound transport close error (non-fatal)", error=str(exc))

    logger.info("Portal shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_application(context: PortalContext) -> FastAPI:
    """Create the FastAPI application for *context*.

    Returns:
        Configured FastAPI application with lifespan, routes, and middleware.
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="Portal",
        version=portal.__version__,
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )
    application.state.context = context
    # /health answers 503 until the lifespan has finished startup.
    application.state.ready = False

    application.include_router(health_router)

    not_found_path = context.config.routing.not_found_path
    static_dir = pathlib.Path(context.config.application.static_dir)
    not_found_page = static_dir / "404.html"

    @application.get(not_found_path, include_in_schema=False)
    async def not_found_page_route() -> Response:
        if not_found_page.is_file():
            return FileResponse(str(not_found_page), status_code=404, media_type="text/html")
        return PlainTextResponse("404 Not Found", status_code=404)

    if static_dir.is_dir():
        application.mount("/", SiteFiles(directory=str(static_dir), html=True), name="site")
        logger.info("Serving static assets", directory=str(static_dir))
    else:
        logger.info("Static asset directory not found, serving API routes only", directory=str(static_dir))

    # Global exception handlers
    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code == 404 and request.url.path != not_found_path:
            return RedirectResponse(not_found_path, status_code=302)
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "code": "internal_error"}},
        )

    return application
