"""ULID-based identifiers for rooms and latency probes."""

from __future__ import annotations

import re

from ulid import ULID

# Crockford Base32 alphabet: 0-9 A-Z excluding I, L, O, U
_CROCKFORD_B32_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$", re.IGNORECASE)


def generate_probe_id() -> str:
    """Generate a new latency probe ID with the ping_ prefix."""
    return f"ping_{ULID()}"


def generate_room_id() -> str:
    """Generate a new room (document) ID with the doc_ prefix."""
    return f"doc_{ULID()}"


def validate_id(id_str: str, expected_prefix: str) -> bool:
    """Validate a ``<prefix>_<ulid>`` identifier."""
    prefix = f"{expected_prefix}_"
    if not id_str.startswith(prefix):
        return False
    return bool(_CROCKFORD_B32_RE.match(id_str[len(prefix):]))
