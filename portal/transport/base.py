"""Outbound transport capability shared by every concrete transport.

A transport performs network I/O on behalf of a proxy client:

  init()     — acquire resources; sets ``ready``
  meta()     — describe the transport (no header payload)
  request()  — one buffered HTTP exchange
  connect()  — open a WebSocket stream driven by callbacks
  close()    — release resources

Concrete transports accept a ``cancel`` event on request() but are not
required to watch it; SafeTransport enforces cancellation for all of them.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from portal.proxy.headers import HeaderMap, HeaderValue

OpenHandler = Callable[[Optional[str]], Awaitable[None]]
MessageHandler = Callable[[Union[str, bytes]], Awaitable[None]]
CloseHandler = Callable[[int, str], Awaitable[None]]
ErrorHandler = Callable[[BaseException], Awaitable[None]]


@dataclass
class TransportResponse:
    """Result of Transport.request()."""

    status: int
    headers: dict[str, HeaderValue] = field(default_factory=dict)
    body: bytes = b""
    status_text: str = ""


class WebSocketChannel(ABC):
    """Handle returned by Transport.connect() for the caller's side of the stream."""

    subprotocol: Optional[str] = None

    @abstractmethod
    async def send(self, data: Union[str, bytes]) -> None:
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...


class Transport(ABC):
    """Abstract outbound transport."""

    ready: bool = False

    @abstractmethod
    async def init(self) -> None:
        ...

    @abstractmethod
    async def meta(self) -> dict[str, Any]:
        ...

    @abstractmethod
    async def request(
        self,
        target: str,
        method: str,
        body: Optional[bytes],
        headers: HeaderMap,
        cancel: Optional[asyncio.Event] = None,
    ) -> TransportResponse:
        ...

    @abstractmethod
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
        ...

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        self.ready = False
