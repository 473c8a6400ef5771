"""Unit tests for the concrete outbound transports.

httpx.MockTransport stands in for the network: DirectTransport and
RelayTransport are handed a client factory that returns a mock-backed
AsyncClient.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Union

import httpx
import pytest

from portal.errors import TransportInvalidHeader
from portal.transport import websocket as websocket_module
from portal.transport.direct import DirectTransport, create_http_client, send_http
from portal.transport.relay import RelayTransport, _websocket_base
from portal.transport.websocket import WebsocketsChannel, open_websocket

pytestmark = pytest.mark.asyncio


class _MockUpstream:
    """Records requests; answers with a fixed response."""

    def __init__(self, status: int = 200, body: bytes = b"ok", headers: Optional[list[tuple[str, str]]] = None) -> None:
        self.requests: list[httpx.Request] = []
        self._status = status
        self._body = body
        self._headers = headers or [("content-type", "text/plain")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self._status, content=self._body, headers=self._headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# ─── create_http_client() ─────────────────────────────────────────────────────


async def test_client_does_not_follow_redirects() -> None:
    client = create_http_client()
    try:
        assert client.follow_redirects is False
    finally:
        await client.aclose()


# ─── send_http() ──────────────────────────────────────────────────────────────


async def test_send_http_returns_transport_response() -> None:
    upstream = _MockUpstream(
        status=201,
        body=b"created",
        headers=[("set-cookie", "a=1"), ("set-cookie", "b=2"), ("x-one", "1")],
    )
    async with upstream.client() as client:
        response = await send_http(client, "https://example.com/p", "POST", b"data", {"Accept": ["a", "b"]})

    assert response.status == 201
    assert response.status_text == "Created"
    assert response.body == b"created"
    assert response.headers["set-cookie"] == ["a=1", "b=2"]
    assert response.headers["x-one"] == "1"
    sent = upstream.requests[0]
    assert sent.content == b"data"
    assert sent.headers.get_list("accept") == ["a", "b"]


async def test_send_http_non_ascii_header_is_invalid_header() -> None:
    upstream = _MockUpstream()
    async with upstream.client() as client:
        with pytest.raises(TransportInvalidHeader):
            await send_http(client, "https://example.com/", "GET", None, {"X-Name": "caf€"})
    assert upstream.requests == []


async def test_send_http_local_protocol_header_error_mapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.LocalProtocolError("Illegal header value b'a\\x01'")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransportInvalidHeader):
            await send_http(client, "https://example.com/", "GET", None, {})


async def test_send_http_other_protocol_errors_propagate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.LocalProtocolError("connection in wrong state")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(httpx.LocalProtocolError):
            await send_http(client, "https://example.com/", "GET", None, {})


# ─── DirectTransport ──────────────────────────────────────────────────────────


async def test_direct_transport_lifecycle() -> None:
    upstream = _MockUpstream()
    transport = DirectTransport(client_factory=upstream.client)

    assert transport.ready is False
    with pytest.raises(RuntimeError):
        await transport.request("https://example.com/", "GET", None, {})

    await transport.init()
    assert transport.ready is True
    response = await transport.request("https://example.com/x", "GET", None, {"Accept": "*/*"})
    assert response.status == 200
    assert str(upstream.requests[0].url) == "https://example.com/x"

    meta = await transport.meta()
    assert meta["transport"] == "direct"

    await transport.close()
    assert transport.ready is False


# ─── RelayTransport ───────────────────────────────────────────────────────────


async def test_relay_transport_sends_target_header() -> None:
    upstream = _MockUpstream()
    transport = RelayTransport("https://relay.example/bare", client_factory=upstream.client)
    await transport.init()
    try:
        await transport.request("https://target.example/page?q=1", "GET", None, {"Accept": "*/*"})
    finally:
        await transport.close()

    sent = upstream.requests[0]
    assert str(sent.url) == "https://relay.example/bare/v1/"
    assert sent.headers["x-bare-url"] == "https://target.example/page?q=1"
    assert sent.headers["accept"] == "*/*"


async def test_relay_transport_meta_returns_manifest() -> None:
    upstream = _MockUpstream(body=b'{"versions": ["v1"]}', headers=[("content-type", "application/json")])
    transport = RelayTransport("https://relay.example/bare/", client_factory=upstream.client)
    await transport.init()
    try:
        assert await transport.meta() == {"versions": ["v1"]}
    finally:
        await transport.close()
    assert str(upstream.requests[0].url) == "https://relay.example/bare/"


@pytest.mark.parametrize("relay,expected", [
    ("https://relay.example/bare/", "wss://relay.example/bare/"),
    ("http://relay.example:8080/bare/", "ws://relay.example:8080/bare/"),
])
async def test_websocket_base(relay: str, expected: str) -> None:
    assert _websocket_base(relay) == expected


async def test_relay_transport_connect_url(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    async def fake_open(url: str, *args: Any) -> str:
        seen["url"] = url
        return "channel"

    monkeypatch.setattr("portal.transport.relay.open_websocket", fake_open)
    transport = RelayTransport("https://relay.example/bare/")

    result = await transport.connect("wss://echo.example/socket?x=1", [], {}, None, None, None, None)  # type: ignore[arg-type]

    assert result == "channel"
    assert seen["url"] == "wss://relay.example/bare/v1/?url=wss%3A%2F%2Fecho.example%2Fsocket%3Fx%3D1"


# ─── WebSocket streams ────────────────────────────────────────────────────────


class _FakeConnection:
    """Minimal stand-in for websockets.ClientConnection."""

    def __init__(self, messages: list[Union[str, bytes]], close_code: Optional[int] = 1000) -> None:
        self._messages = list(messages)
        self.subprotocol = "wisp"
        self.close_code = close_code
        self.close_reason = "bye"
        self.sent: list[Union[str, bytes]] = []
        self.closed_with: Optional[tuple[int, str]] = None

    def __aiter__(self) -> "_FakeConnection":
        return self

    async def __anext__(self) -> Union[str, bytes]:
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)

    async def send(self, data: Union[str, bytes]) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)


async def test_open_websocket_wires_callbacks(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = _FakeConnection(["hello", b"\x00\x01"])
    captured: dict[str, Any] = {}

    async def fake_connect(url: str, **kwargs: Any) -> _FakeConnection:
        captured["url"] = url
        captured.update(kwargs)
        return connection

    monkeypatch.setattr(websocket_module.websockets, "connect", fake_connect)

    events: list[Any] = []
    closed = asyncio.Event()

    async def on_open(subprotocol: Optional[str]) -> None:
        events.append(("open", subprotocol))

    async def on_message(data: Union[str, bytes]) -> None:
        events.append(("message", data))

    async def on_close(code: int, reason: str) -> None:
        events.append(("close", code, reason))
        closed.set()

    async def on_error(exc: BaseException) -> None:
        events.append(("error", exc))
        closed.set()

    channel = await open_websocket(
        "wss://echo.example/", ["wisp"], {"Cookie": ["a=1", "b=2"]},
        on_open, on_message, on_close, on_error,
    )
    await asyncio.wait_for(closed.wait(), timeout=1.0)

    assert isinstance(channel, WebsocketsChannel)
    assert captured["additional_headers"] == [("Cookie", "a=1"), ("Cookie", "b=2")]
    assert captured["subprotocols"] == ["wisp"]
    assert events == [
        ("open", "wisp"),
        ("message", "hello"),
        ("message", b"\x00\x01"),
        ("close", 1000, "bye"),
    ]

    await channel.send("up")
    await channel.close(1001, "going away")
    assert connection.sent == ["up"]
    assert connection.closed_with == (1001, "going away")


async def test_open_websocket_abnormal_close_reports_1006(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_connect(url: str, **kwargs: Any) -> _FakeConnection:
        return _FakeConnection([], close_code=None)

    monkeypatch.setattr(websocket_module.websockets, "connect", fake_connect)
    codes: list[int] = []
    done = asyncio.Event()

    async def noop(*_: Any) -> None:
        return None

    async def on_close(code: int, reason: str) -> None:
        codes.append(code)
        done.set()

    await open_websocket("wss://echo.example/", [], {}, noop, noop, on_close, noop)
    await asyncio.wait_for(done.wait(), timeout=1.0)
    assert codes == [1006]


async def test_open_websocket_header_error_mapped(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_connect(url: str, **kwargs: Any) -> _FakeConnection:
        raise ValueError("invalid header value")

    monkeypatch.setattr(websocket_module.websockets, "connect", fake_connect)

    async def noop(*_: Any) -> None:
        return None

    with pytest.raises(TransportInvalidHeader):
        await open_websocket("wss://echo.example/", [], {}, noop, noop, noop, noop)


async def test_open_websocket_on_open_failure_closes_connection(monkeypatch: pytest.MonkeyPatch) -> None:
    connection = _FakeConnection(["never read"])

    async def fake_connect(url: str, **kwargs: Any) -> _FakeConnection:
        return connection

    monkeypatch.setattr(websocket_module.websockets, "connect", fake_connect)
    messages: list[Any] = []

    async def on_open(subprotocol: Optional[str]) -> None:
        raise RuntimeError("client went away")

    async def on_message(data: Union[str, bytes]) -> None:
        messages.append(data)

    async def noop(*_: Any) -> None:
        return None

    with pytest.raises(RuntimeError, match="client went away"):
        await open_websocket("wss://echo.example/", [], {}, on_open, on_message, noop, noop)

    assert connection.closed_with == (1000, "")
    assert messages == []
