"""Exception types and error classification for Portal.

Every failure mode has a home:

  - ErrorKind               — tag recorded on a DispatchOutcome and in logs
  - PortalError             — base class for errors raised by Portal code
  - TransportInvalidHeader  — an outbound transport refused the header set
  - RequestCancelled        — the caller cancelled an outbound request
  - RelayTargetError        — a relay request carried no usable target URL
"""

from __future__ import annotations

import enum
import re


class ErrorKind(str, enum.Enum):
    """Failure taxonomy shared by the dispatcher and the outbound guard."""

    MALFORMED_HEADER = "malformed_header"
    RATE_LIMITED = "rate_limited"
    UPGRADE_MISMATCH = "upgrade_mismatch"
    DOWNSTREAM_FAILURE = "downstream_failure"
    TRANSPORT_INVALID_HEADER = "transport_invalid_header"
    CONNECTION_RESET = "connection_reset"


class PortalError(Exception):
    """Base class for Portal errors."""


class TransportInvalidHeader(PortalError):
    """Raised by a transport when it rejects a header name or value."""


class RequestCancelled(PortalError):
    """Raised when an outbound request is cancelled through its signal."""


class RelayTargetError(PortalError):
    """Raised when a relay request names no valid absolute target URL."""


# Messages produced by h11, httpx, websockets and native transports when a
# header is rejected.
_INVALID_HEADER_PATTERN = re.compile(
    r"invalidheadervalue|invalid[ _-]?header|illegal header", re.IGNORECASE
)


def is_invalid_header_error(exc: BaseException) -> bool:
    """Return True if *exc* reports an invalid-header condition."""
    if isinstance(exc, TransportInvalidHeader):
        return True
    return bool(_INVALID_HEADER_PATTERN.search(str(exc)))


def is_connection_reset(exc: BaseException) -> bool:
    """Return True for expected peer-disconnect conditions (ECONNRESET, EPIPE)."""
    return isinstance(exc, (ConnectionResetError, BrokenPipeError))
