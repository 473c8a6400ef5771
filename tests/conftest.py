"""Root test configuration for Portal.

Every test runs in an empty temporary working directory with the Portal
environment overrides removed, so a developer's ``.portal/config.yaml`` or
exported ``PORT`` / ``BARE_*`` variables never leak into results.

Shared fixtures:
  asgi_call — drive any ASGI app with a hand-built scope and scripted
              receive messages; returns every message the app sent.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import pytest

_PORTAL_ENV = (
    "PORT",
    "HOST",
    "PORTAL_CONFIG",
    "BARE_MAX_CONNECTIONS_PER_IP",
    "BARE_WINDOW_DURATION",
    "BARE_BLOCK_DURATION",
    "TRUST_PROXY",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    """Clear Portal env overrides and run from an empty directory."""
    for name in _PORTAL_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)


AsgiCall = Callable[..., Awaitable[list[dict[str, Any]]]]


@pytest.fixture
def asgi_call() -> AsgiCall:
    """Return a coroutine function ``(app, scope, messages) -> sent messages``.

    ``messages`` are fed to the app's receive() in order; once exhausted,
    receive() answers with a disconnect of the scope's type.
    """

    async def _call(app: Any, scope: dict[str, Any], messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        inbox = list(messages)
        sent: list[dict[str, Any]] = []

        async def receive() -> dict[str, Any]:
            if inbox:
                return inbox.pop(0)
            if scope["type"] == "websocket":
                return {"type": "websocket.disconnect", "code": 1000}
            return {"type": "http.disconnect"}

        async def send(message: dict[str, Any]) -> None:
            sent.append(message)

        await app(scope, receive, send)
        return sent

    return _call


def http_scope(
    path: str,
    headers: list[tuple[bytes, bytes]] | None = None,
    *,
    method: str = "GET",
    client: tuple[str, int] = ("203.0.113.7", 51000),
) -> dict[str, Any]:
    """Build a minimal ASGI HTTP scope."""
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": list(headers or []),
        "client": client,
        "server": ("testserver", 80),
    }


def websocket_scope(
    path: str,
    headers: list[tuple[bytes, bytes]] | None = None,
    *,
    client: tuple[str, int] = ("203.0.113.7", 51000),
    extensions: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a minimal ASGI WebSocket scope (Upgrade header included)."""
    base = [(b"connection", b"upgrade"), (b"upgrade", b"websocket")]
    return {
        "type": "websocket",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "scheme": "ws",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": base + list(headers or []),
        "client": client,
        "server": ("testserver", 80),
        "subprotocols": [],
        "extensions": extensions or {},
    }


@pytest.fixture
def make_http_scope() -> Callable[..., dict[str, Any]]:
    return http_scope


@pytest.fixture
def make_websocket_scope() -> Callable[..., dict[str, Any]]:
    return websocket_scope
