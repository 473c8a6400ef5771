"""HTTP header processing for Portal.

One sanitizer, parameterized only by profile, serves every place header data
crosses a protocol boundary:

  - inbound:  the dispatcher sanitizes every request and upgrade scope
  - outbound: SafeTransport sanitizes before handing headers to a transport,
              and builds the strict fallback set with minimal_headers()
  - relay:    the HTTP relay strips hop-by-hop headers in both directions

Profiles:
  PERMISSIVE — keeps HTAB, 0x20–0x7E and obs-text 0x80–0xFF (RFC 7230
               ``field-content``); strips every other character.
  STRICT     — keeps 0x20–0x7E only. Last-resort fallback.

Sanitization is pure and idempotent: sanitizing twice with the same profile
gives the same result as sanitizing once, and compliant input is returned
unchanged.
"""

from __future__ import annotations

import enum
import re
from typing import Iterable, Mapping, Sequence, Union

from portal.constants import MINIMAL_HEADER_ALLOWLIST, RELAY_HEADER_PREFIX

HeaderValue = Union[str, list[str]]
HeaderMap = Mapping[str, Union[str, Sequence[str]]]
RawHeaders = list[tuple[bytes, bytes]]


class Profile(str, enum.Enum):
    """Allowed-character policy for header names and values."""

    PERMISSIVE = "permissive"
    STRICT = "strict"


# Patterns match the characters each profile removes.
_DISALLOWED: dict[Profile, re.Pattern[str]] = {
    Profile.PERMISSIVE: re.compile(r"[^\t\x20-\x7E\x80-\xFF]"),
    Profile.STRICT: re.compile(r"[^\x20-\x7E]"),
}

# Hop-by-hop headers MUST NOT be forwarded by intermediaries (RFC 7230 §6.1).
# host is derived from the relay target; content-length is recomputed.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

# The relay hands back decoded bodies, so the upstream encoding no longer applies.
_RESPONSE_DROP_HEADERS: frozenset[str] = HOP_BY_HOP_HEADERS | {"content-encoding"}


# ─── Sanitizer ────────────────────────────────────────────────────────────────


def sanitize_value(value: object, profile: Profile = Profile.PERMISSIVE) -> str:
    """Strip every character *profile* does not allow from a header name or value.

    Non-string input is converted with ``str()`` first.
    """
    if not isinstance(value, str):
        value = str(value)
    return _DISALLOWED[profile].sub("", value)


def sanitize_headers(
    headers: HeaderMap,
    profile: Profile = Profile.PERMISSIVE,
) -> dict[str, HeaderValue]:
    """Return a protocol-safe copy of *headers*.

    Rules:
      1. Names and values are both sanitized with *profile*.
      2. A header whose name sanitizes to an empty or whitespace-only string
         is dropped entirely; it is never forwarded with an empty key.
      3. Multi-valued headers are sanitized element-wise; order and length
         of the value list are preserved.
      4. ``None`` values are skipped.

    Args:
        headers: Mapping of header name to a value or a sequence of values.
        profile: Sanitization profile (default PERMISSIVE).

    Returns:
        New ``dict`` — the input mapping is never modified.
    """
    sanitized: dict[str, HeaderValue] = {}
    for name, value in headers.items():
        clean_name = sanitize_value(name, profile)
        if not clean_name.strip():
            continue
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            sanitized[clean_name] = [sanitize_value(v, profile) for v in value]
        else:
            sanitized[clean_name] = sanitize_value(value, profile)
    return sanitized


def sanitize_raw_headers(
    raw_headers: Iterable[tuple[bytes, bytes]],
    profile: Profile = Profile.PERMISSIVE,
) -> tuple[RawHeaders, bool]:
    """Sanitize ASGI-style ``(name, value)`` byte pairs.

    Bytes are mapped through latin-1 so every octet round-trips to the same
    code point and the same character policy applies as in sanitize_headers().
    Repeated names (the multi-valued form on the wire) keep their order.

    Returns:
        ``(pairs, changed)`` — the sanitized pairs and whether any header was
        altered or dropped.
    """
    result: RawHeaders = []
    changed = False
    for raw_name, raw_value in raw_headers:
        name = raw_name.decode("latin-1")
        value = raw_value.decode("latin-1")
        clean_name = sanitize_value(name, profile)
        if not clean_name.strip():
            changed = True
            continue
        clean_value = sanitize_value(value, profile)
        if clean_name != name or clean_value != value:
            changed = True
        result.append((clean_name.encode("latin-1"), clean_value.encode("latin-1")))
    return result, changed


def minimal_headers(headers: HeaderMap) -> dict[str, HeaderValue]:
    """Reduce *headers* to the strict fallback set.

    Keeps only accept, accept-language, content-type, content-length and
    user-agent (case-insensitive), each passed through the STRICT profile.
    Used for the single retry after a transport rejects the permissive set.
    """
    allowed = {
        name: value
        for name, value in headers.items()
        if name.lower() in MINIMAL_HEADER_ALLOWLIST
    }
    return sanitize_headers(allowed, Profile.STRICT)


# ─── Shape conversion ─────────────────────────────────────────────────────────


def expand_header_pairs(headers: HeaderMap) -> list[tuple[str, str]]:
    """Flatten a HeaderMap into ``(name, value)`` pairs, one per value."""
    pairs: list[tuple[str, str]] = []
    for name, value in headers.items():
        if isinstance(value, (list, tuple)):
            pairs.extend((name, v) for v in value)
        else:
            pairs.append((name, value))
    return pairs


def collect_header_pairs(pairs: Iterable[tuple[str, str]]) -> dict[str, HeaderValue]:
    """Fold ``(name, value)`` pairs into a HeaderMap; repeats become lists."""
    headers: dict[str, HeaderValue] = {}
    for name, value in pairs:
        existing = headers.get(name)
        if existing is None:
            headers[name] = value
        elif isinstance(existing, list):
            existing.append(value)
        else:
            headers[name] = [existing, value]
    return headers


# ─── Relay header rules ───────────────────────────────────────────────────────


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    """Header names listed in Connection are hop-by-hop for this message too."""
    tokens: set[str] = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def build_relay_request_headers(
    request_headers: Iterable[tuple[str, str]],
) -> dict[str, HeaderValue]:
    """Build the header map a relay request forwards to its target.

    Rules applied (in order):
      1. Strip relay control headers (``X-Bare-*``) — consumed by the relay.
      2. Strip hop-by-hop headers and any header named in ``Connection``.
      3. Forward everything else; repeated names become a value list.

    Args:
        request_headers: ``(name, value)`` pairs from the inbound request,
                         typically ``request.headers.items()``.
    """
    pairs = list(request_headers)
    dropped = HOP_BY_HOP_HEADERS | _connection_tokens(pairs)
    return collect_header_pairs(
        (name, value)
        for name, value in pairs
        if not name.lower().startswith(RELAY_HEADER_PREFIX)
        and name.lower() not in dropped
    )


def build_relay_response_headers(
    upstream_headers: HeaderMap,
) -> list[tuple[str, str]]:
    """Build the response header pairs returned to the relay client.

    Strips hop-by-hop headers, ``Content-Encoding`` (bodies arrive decoded)
    and any header named in ``Connection``. Multi-valued headers are expanded
    back into repeated pairs so ``Set-Cookie`` and friends survive.
    """
    pairs = expand_header_pairs(upstream_headers)
    dropped = _RESPONSE_DROP_HEADERS | _connection_tokens(pairs)
    return [(name, value) for name, value in pairs if name.lower() not in dropped]
