"""Programmatic uvicorn entry point for Portal.

Reads host and port from the loaded config (0.0.0.0:8080 by default) and starts
uvicorn on ``portal.main:app`` with:

  --no-proxy-headers            client address handling stays with the
                                dispatcher (``server.trust_proxy``)
  --h11-max-incomplete-event-size 65536
                                64 KB cap on the request head
  --timeout-keep-alive 65       idle keep-alive connections close after 65 s

Usage:
    python -m portal.run
    portal                      # via pyproject.toml [project.scripts]

The dispatcher is built when uvicorn imports ``portal.main``, before the
socket is bound. uvicorn exits non-zero when the listener cannot bind.
"""

from __future__ import annotations

import os

import uvicorn

from portal.config import load_config
from portal.constants import KEEP_ALIVE_TIMEOUT_S, MAX_HEADER_BYTES

UVICORN_APP = "portal.main:app"


def main() -> None:
    """Start Portal on the configured host and port.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()
    log_level = os.getenv("LOG_LEVEL", "INFO").lower()

    uvicorn.run(
        UVICORN_APP,
        host=config.server.host,
        port=config.server.port,
        proxy_headers=False,
        h11_max_incomplete_event_size=MAX_HEADER_BYTES,
        timeout_keep_alive=KEEP_ALIVE_TIMEOUT_S,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
