"""Nostr event kinds and envelope types used on the wire."""

from __future__ import annotations

from enum import IntEnum

ROOM_TAG = "d"


class EventKind(IntEnum):
    DOCUMENT_META = 30078  # reserved: document metadata
    DOCUMENT_SNAPSHOT = 30079  # replaceable: full document snapshot
    CRDT_UPDATE = 21000  # regular: incremental update
    PRESENCE = 21001  # ephemeral: cursor/name broadcast
    PING = 21002
    PONG = 21003


# Kinds the document subscription and history queries look at.
DOCUMENT_KINDS: tuple[EventKind, ...] = (EventKind.CRDT_UPDATE, EventKind.DOCUMENT_SNAPSHOT)

PROBE_KINDS: tuple[EventKind, ...] = (EventKind.PING, EventKind.PONG)

# Values of the envelope "type" field.
ENVELOPE_TYPES: frozenset[str] = frozenset({"update", "snapshot", "awareness", "sync-request"})

_ENVELOPE_TYPE_BY_KIND: dict[EventKind, str] = {
    EventKind.CRDT_UPDATE: "update",
    EventKind.DOCUMENT_SNAPSHOT: "snapshot",
}


def envelope_type_for(kind: EventKind) -> str:
    """Return the envelope ``type`` string carried by events of *kind*.

    Raises ``ValueError`` for kinds that do not carry a sync envelope.
    """
    try:
        return _ENVELOPE_TYPE_BY_KIND[kind]
    except KeyError:
        raise ValueError(f"Kind {int(kind)} does not carry a sync envelope") from None


def parse_kind(value: int) -> EventKind | None:
    """Return the known kind for *value*, or ``None`` if it is not ours."""
    try:
        return EventKind(value)
    except ValueError:
        return None
