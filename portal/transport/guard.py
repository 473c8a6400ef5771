"""Header-integrity guard for outbound transports.

SafeTransport wraps any Transport and keeps malformed header data from ever
reaching it:

  request():
    1. Sanitize headers with the PERMISSIVE profile and delegate.
    2. If the delegate reports an invalid-header condition, retry exactly once
       with minimal_headers(): the five allow-listed headers, STRICT profile.
    3. If the retry fails too, its error propagates unchanged. There is no
       second retry.

  Cancellation:
    ``cancel`` is checked before each attempt, and an attempt in flight is
    abandoned as soon as it fires. A cancelled request raises RequestCancelled
    and never takes the retry path.

  connect():
    Sanitized once, delegated, no retry (a half-completed handshake cannot be
    replayed).

  init() / meta():
    Pure delegation; ``ready`` always mirrors the wrapped transport.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Optional, Sequence

from portal.errors import ErrorKind, RequestCancelled, is_invalid_header_error
from portal.proxy.headers import HeaderMap, Profile, minimal_headers, sanitize_headers
from portal.transport.base import (
    CloseHandler,
    ErrorHandler,
    MessageHandler,
    OpenHandler,
    Transport,
    TransportResponse,
    WebSocketChannel,
)
from portal.utils.logger import get_logger

logger = get_logger(__name__)


class SafeTransport(Transport):
    """Transport decorator that sanitizes headers and degrades once on rejection."""

    def __init__(self, inner: Transport) -> None:
        self._inner = inner

    @property
    def inner(self) -> Transport:
        return self._inner

    @property  # type: ignore[override]
    def ready(self) -> bool:
        return self._inner.ready

    async def init(self) -> None:
        await self._inner.init()

    async def meta(self) -> dict[str, Any]:
        return await self._inner.meta()

    async def close(self) -> None:
        await self._inner.close()

    async def request(
        self,
        target: str,
        method: str,
        body: Optional[bytes],
        headers: HeaderMap,
        cancel: Optional[asyncio.Event] = None,
    ) -> TransportResponse:
        sanitized = sanitize_headers(headers, Profile.PERMISSIVE)

        try:
            return await self._attempt(target, method, body, sanitized, cancel)
        except RequestCancelled:
            raise
        except Exception as exc:
            if not is_invalid_header_error(exc):
                raise
            if cancel is not None and cancel.is_set():
                raise RequestCancelled(f"{method} {target} cancelled") from exc
            logger.warning(
                "transport_header_rejected",
                error_kind=ErrorKind.TRANSPORT_INVALID_HEADER.value,
                target=target,
                error=str(exc),
                retry="minimal_headers",
            )

        reduced = minimal_headers(sanitized)
        return await self._attempt(target, method, body, reduced, cancel)

    async def _attempt(
        self,
        target: str,
        method: str,
        body: Optional[bytes],
        headers: HeaderMap,
        cancel: Optional[asyncio.Event],
    ) -> TransportResponse:
        """Run one delegate call, abandoning it if *cancel* fires first."""
        if cancel is not None and cancel.is_set():
            raise RequestCancelled(f"{method} {target} cancelled before it started")

        call = self._inner.request(target, method, body, headers, cancel)
        if cancel is None:
            return await call

        attempt = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {attempt, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            # Also reached when the caller itself is cancelled.
            if not attempt.done():
                attempt.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await attempt

        if attempt in done:
            return attempt.result()
        raise RequestCancelled(f"{method} {target} cancelled while in flight")

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
        return await self._inner.connect(
            url,
            protocols,
            sanitize_headers(headers, Profile.PERMISSIVE),
            on_open,
            on_message,
            on_close,
            on_error,
        )
