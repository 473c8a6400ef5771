"""ULID generation for connection identifiers.

Each dispatched connection gets a 26-character ULID (Crockford Base32,
millisecond timestamp + random component). It is bound into the logging
context so every line about one connection can be correlated, and sorting
the IDs orders connections by arrival.

Uses the ``python-ulid`` library; do not hand-roll ULID generation.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new ULID as a 26-character uppercase string."""
    return str(ULID())
