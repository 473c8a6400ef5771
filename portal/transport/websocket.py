"""WebSocket streams for outbound transports, built on the ``websockets`` library."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional, Sequence, Union

import websockets

from portal.errors import TransportInvalidHeader, is_invalid_header_error
from portal.proxy.headers import HeaderMap, expand_header_pairs
from portal.transport.base import (
    CloseHandler,
    ErrorHandler,
    MessageHandler,
    OpenHandler,
    WebSocketChannel,
)
from portal.utils.logger import get_logger

logger = get_logger(__name__)

PING_INTERVAL_S: float = 30.0
PING_TIMEOUT_S: float = 10.0
CLOSE_TIMEOUT_S: float = 5.0


class WebsocketsChannel(WebSocketChannel):
    """WebSocketChannel backed by a ``websockets`` client connection.

    A reader task forwards every incoming frame to ``on_message`` and reports
    the end of the stream through ``on_close`` (clean or abnormal close) or
    ``on_error`` (anything else).
    """

    def __init__(self, connection: websockets.ClientConnection) -> None:
        self._connection = connection
        self.subprotocol = connection.subprotocol
        self._reader: Optional[asyncio.Task[None]] = None

    def start(
        self,
        on_message: MessageHandler,
        on_close: CloseHandler,
        on_error: ErrorHandler,
    ) -> None:
        self._reader = asyncio.create_task(self._read(on_message, on_close, on_error))

    async def _read(
        self,
        on_message: MessageHandler,
        on_close: CloseHandler,
        on_error: ErrorHandler,
    ) -> None:
        try:
            async for message in self._connection:
                await on_message(message)
        except websockets.ConnectionClosed:
            pass
        except Exception as exc:  # noqa: BLE001
            logger.warning("websocket_stream_error", error=str(exc), error_type=type(exc).__name__)
            await on_error(exc)
            return
        code = self._connection.close_code
        await on_close(code if code is not None else 1006, self._connection.close_reason or "")

    async def send(self, data: Union[str, bytes]) -> None:
        await self._connection.send(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._connection.close(code=code, reason=reason)
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader


async def open_websocket(
    url: str,
    protocols: Sequence[str],
    headers: HeaderMap,
    on_open: OpenHandler,
    on_message: MessageHandler,
    on_close: CloseHandler,
    on_error: ErrorHandler,
) -> WebsocketsChannel:
    """Open *url* and wire the callbacks; ``on_open`` runs before frames flow.

    Raises:
        TransportInvalidHeader: The handshake headers were rejected locally.
    """
    try:
        connection = await websockets.connect(
            url,
            additional_headers=expand_header_pairs(headers),
            subprotocols=list(protocols) or None,
            ping_interval=PING_INTERVAL_S,
            ping_timeout=PING_TIMEOUT_S,
            close_timeout=CLOSE_TIMEOUT_S,
        )
    except (UnicodeEncodeError, ValueError) as exc:
        if isinstance(exc, UnicodeEncodeError) or is_invalid_header_error(exc):
            raise TransportInvalidHeader(f"Invalid header value: {exc}") from exc
        raise

    channel = WebsocketsChannel(connection)
    try:
        await on_open(connection.subprotocol)
    except BaseException:
        # The caller never took ownership of the stream.
        with contextlib.suppress(Exception):
            await connection.close()
        raise
    channel.start(on_message, on_close, on_error)
    return channel
