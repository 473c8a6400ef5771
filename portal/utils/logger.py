"""structlog setup for Portal.

One connection, one ``connection_id``: the dispatcher sets it when a
connection arrives and clears it when the handler returns, and every line
logged in between (sanitizer warnings, admission blocks, relay failures)
carries it. Output is JSON lines in production and a colored console
rendering when ``JSON_LOGS=false``.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

connection_id_var: ContextVar[Optional[str]] = ContextVar("connection_id", default=None)


def add_connection_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag the entry with the connection being dispatched, if any."""
    connection_id = connection_id_var.get()
    if connection_id:
        event_dict["connection_id"] = connection_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = time.time()
    return event_dict


def _processors(json_output: bool) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_connection_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        chain.append(structlog.processors.JSONRenderer())
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    return chain


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """(Re)configure structlog for the process.

    Called at import with defaults, then again by portal.main once
    ``LOG_LEVEL`` / ``JSON_LOGS`` have been read.

    Args:
        log_level:   Name of the minimum level, e.g. ``"DEBUG"``.
        json_output: JSON lines when True, console rendering otherwise.
    """
    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "portal") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_connection_id(connection_id: str) -> None:
    connection_id_var.set(connection_id)


def clear_connection_id() -> None:
    connection_id_var.set(None)


configure_logging()
