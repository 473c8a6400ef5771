"""Portal composition root.

  create_portal() — builds config, context, application and dispatcher, in
                    that order, synchronously
  app             — module-level dispatcher for ``uvicorn portal.main:app``

Nothing here starts the listener; see portal/run.py.
"""

from __future__ import annotations

import os
from typing import Optional

from portal.application import create_application
from portal.config import Config, load_config
from portal.context import build_context
from portal.proxy.dispatcher import Dispatcher
from portal.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


def create_portal(config: Optional[Config] = None) -> Dispatcher:
    """Build a ready-to-serve Dispatcher.

    Args:
        config: Explicit configuration; load_config() is used when omitted.

    Raises:
        SystemExit(1): Invalid configuration or an unloadable handler.
    """
    if config is None:
        config = load_config()
    context = build_context(config)
    application = create_application(context)
    return Dispatcher(context, application)


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────
#   uvicorn portal.main:app --no-proxy-headers --timeout-keep-alive 65

app = create_portal()
