"""Wire codec: signed events, filters, sync envelopes and their content.

A sync envelope travels as the ``content`` of a signed Nostr event::

    {"type": "update", "docId": "<room>", "data": "<base64>", "timestamp": <ms>}

Presence events carry ``{"name"?, "cursor"?: {"anchor", "head"}, "color"?}``
and latency probes carry ``{"type": "ping"|"pong", "id", "docId", "timestamp"}``.

``decode_event()`` turns a signed event into one of the message variants
below, or ``None`` for kinds this package does not handle.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from dataclasses import dataclass, field
from typing import Union

from relaydoc.core.errors import EnvelopeDecodeError
from relaydoc.core.kinds import ENVELOPE_TYPES, ROOM_TAG, EventKind, envelope_type_for, parse_kind


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Signed events and filters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignedEvent:
    """An event as signed by a key and stored by relays (NIP-01 shape)."""

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...]
    content: str
    sig: str = ""

    @property
    def room(self) -> str | None:
        """Value of the first ``d`` tag, if any."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == ROOM_TAG:
                return tag[1]
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SignedEvent:
        return cls(
            id=str(data["id"]),
            pubkey=str(data["pubkey"]),
            created_at=int(data["created_at"]),
            kind=int(data["kind"]),
            tags=tuple(tuple(str(v) for v in t) for t in data.get("tags", [])),
            content=str(data.get("content", "")),
            sig=str(data.get("sig", "")),
        )


@dataclass(frozen=True)
class EventFilter:
    """Subscription / query filter scoped to one room."""

    kinds: tuple[int, ...]
    room: str | None = None
    since: int | None = None
    limit: int | None = None
    authors: tuple[str, ...] | None = None

    def to_dict(self) -> dict:
        """Render as a NIP-01 filter object."""
        result: dict = {"kinds": [int(k) for k in self.kinds]}
        if self.room is not None:
            result[f"#{ROOM_TAG}"] = [self.room]
        if self.since is not None:
            result["since"] = self.since
        if self.limit is not None:
            result["limit"] = self.limit
        if self.authors is not None:
            result["authors"] = list(self.authors)
        return result

    def matches(self, event: SignedEvent) -> bool:
        """Return ``True`` if *event* passes this filter (``limit`` is ignored)."""
        if event.kind not in self.kinds:
            return False
        if self.room is not None and event.room != self.room:
            return False
        if self.since is not None and event.created_at < self.since:
            return False
        if self.authors is not None and event.pubkey not in self.authors:
            return False
        return True


def room_tags(room_id: str) -> tuple[tuple[str, ...], ...]:
    return ((ROOM_TAG, room_id),)


# ---------------------------------------------------------------------------
# Sync envelope (update / snapshot)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncEnvelope:
    """Binary CRDT payload addressed to one document."""

    type: str
    doc_id: str
    payload: bytes
    created_at: int = field(default_factory=now_ms)


def encode_envelope(envelope: SyncEnvelope) -> str:
    return json.dumps(
        {
            "type": envelope.type,
            "docId": envelope.doc_id,
            "data": base64.b64encode(envelope.payload).decode("ascii"),
            "timestamp": envelope.created_at,
        },
        separators=(",", ":"),
    )


def decode_envelope(content: str) -> SyncEnvelope:
    """Parse envelope JSON.

    Raises:
        EnvelopeDecodeError: On malformed JSON, missing fields, an unknown
            ``type`` or a payload that is not valid base64.
    """
    data = _load_object(content)
    try:
        env_type = data["type"]
        doc_id = data["docId"]
        encoded = data["data"]
        timestamp = int(data.get("timestamp", 0))
    except (KeyError, TypeError, ValueError) as exc:
        raise EnvelopeDecodeError(f"Malformed envelope: {exc}") from None

    if env_type not in ENVELOPE_TYPES:
        raise EnvelopeDecodeError(f"Unknown envelope type: {env_type!r}")
    if not isinstance(doc_id, str) or not isinstance(encoded, str):
        raise EnvelopeDecodeError("Envelope docId and data must be strings")

    try:
        payload = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EnvelopeDecodeError(f"Invalid base64 payload: {exc}") from None

    return SyncEnvelope(type=env_type, doc_id=doc_id, payload=payload, created_at=timestamp)


# ---------------------------------------------------------------------------
# Presence content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Cursor:
    anchor: int
    head: int


@dataclass(frozen=True)
class PresenceContent:
    name: str | None = None
    cursor: Cursor | None = None
    color: str | None = None


def encode_presence(presence: PresenceContent) -> str:
    data: dict = {}
    if presence.name is not None:
        data["name"] = presence.name
    if presence.cursor is not None:
        data["cursor"] = {"anchor": presence.cursor.anchor, "head": presence.cursor.head}
    if presence.color is not None:
        data["color"] = presence.color
    return json.dumps(data, separators=(",", ":"))


def decode_presence(content: str) -> PresenceContent:
    data = _load_object(content)

    name = data.get("name")
    if name is not None and not isinstance(name, str):
        raise EnvelopeDecodeError("Presence name must be a string")
    color = data.get("color")
    if color is not None and not isinstance(color, str):
        raise EnvelopeDecodeError("Presence color must be a string")

    cursor = None
    raw_cursor = data.get("cursor")
    if raw_cursor is not None:
        try:
            cursor = Cursor(anchor=int(raw_cursor["anchor"]), head=int(raw_cursor["head"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise EnvelopeDecodeError(f"Malformed presence cursor: {exc}") from None

    return PresenceContent(name=name, cursor=cursor, color=color)


# ---------------------------------------------------------------------------
# Latency probe content
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProbeContent:
    type: str  # "ping" or "pong"
    probe_id: str
    doc_id: str
    timestamp: int


def encode_probe(probe: ProbeContent) -> str:
    return json.dumps(
        {
            "type": probe.type,
            "id": probe.probe_id,
            "docId": probe.doc_id,
            "timestamp": probe.timestamp,
        },
        separators=(",", ":"),
    )


def decode_probe(content: str) -> ProbeContent:
    data = _load_object(content)
    try:
        probe = ProbeContent(
            type=str(data["type"]),
            probe_id=str(data["id"]),
            doc_id=str(data["docId"]),
            timestamp=int(data.get("timestamp", 0)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise EnvelopeDecodeError(f"Malformed probe: {exc}") from None
    if probe.type not in ("ping", "pong"):
        raise EnvelopeDecodeError(f"Unknown probe type: {probe.type!r}")
    return probe


# ---------------------------------------------------------------------------
# Decoded message variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpdateMessage:
    event: SignedEvent
    envelope: SyncEnvelope


@dataclass(frozen=True)
class SnapshotMessage:
    event: SignedEvent
    envelope: SyncEnvelope


@dataclass(frozen=True)
class PresenceMessage:
    event: SignedEvent
    presence: PresenceContent


@dataclass(frozen=True)
class PingMessage:
    event: SignedEvent
    probe: ProbeContent


@dataclass(frozen=True)
class PongMessage:
    event: SignedEvent
    probe: ProbeContent


Message = Union[UpdateMessage, SnapshotMessage, PresenceMessage, PingMessage, PongMessage]


def decode_event(event: SignedEvent) -> Message | None:
    """Decode a signed event into its message variant.

    Returns ``None`` for kinds that are not part of the sync protocol.

    Raises:
        EnvelopeDecodeError: If the kind is known but the content is not,
            or an envelope type does not match its event kind.
    """
    kind = parse_kind(event.kind)
    if kind is None or kind == EventKind.DOCUMENT_META:
        return None

    if kind in (EventKind.CRDT_UPDATE, EventKind.DOCUMENT_SNAPSHOT):
        envelope = decode_envelope(event.content)
        expected = envelope_type_for(kind)
        if envelope.type != expected:
            raise EnvelopeDecodeError(
                f"Kind {int(kind)} carries {expected!r} envelopes, got {envelope.type!r}"
            )
        if kind == EventKind.CRDT_UPDATE:
            return UpdateMessage(event, envelope)
        return SnapshotMessage(event, envelope)
    if kind == EventKind.PRESENCE:
        return PresenceMessage(event, decode_presence(event.content))

    probe = decode_probe(event.content)
    if kind == EventKind.PING:
        return PingMessage(event, probe)
    return PongMessage(event, probe)


def _load_object(content: str) -> dict:
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, TypeError) as exc:
        raise EnvelopeDecodeError(f"Content is not JSON: {exc}") from None
    if not isinstance(data, dict):
        raise EnvelopeDecodeError("Content must be a JSON object")
    return data
