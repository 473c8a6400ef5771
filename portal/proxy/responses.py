"""HTTP response builders for Portal's own error answers.

  build_rate_limited_response():
      HTTP 429 — admission rejected. Carries ``Retry-After`` in whole seconds.

  build_upstream_unavailable_response():
      HTTP 502 — the relay target could not be reached.

  build_bad_target_response():
      HTTP 400 — a relay request named no usable target.

  build_internal_error_response():
      HTTP 500 — a downstream handler failed before its response started.

Error bodies share one shape: ``{"error": {"message": ..., "code": ...}}``.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse
from starlette.responses import PlainTextResponse


def build_rate_limited_response(retry_after: int) -> JSONResponse:
    """Build the HTTP 429 answer for a rejected admission.

    Args:
        retry_after: Seconds until the client's block expires.
    """
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "message": "Too many connections from this address",
                "code": "rate_limited",
                "retry_after": retry_after,
            }
        },
        headers={"Retry-After": str(retry_after)},
    )


def build_upstream_unavailable_response(reason: str = "") -> JSONResponse:
    """Build the HTTP 502 answer for relay connectivity failures.

    Args:
        reason: Short failure class name (e.g. ``"ConnectError"``). Must not
                contain request data.
    """
    return JSONResponse(
        status_code=502,
        content={
            "error": {
                "message": "Relay target unavailable",
                "code": "upstream_unavailable",
                "detail": reason if reason else None,
            }
        },
    )


def build_bad_target_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": {"message": message, "code": "bad_target"}},
    )


def build_internal_error_response() -> PlainTextResponse:
    return PlainTextResponse("Internal Server Error", status_code=500)
