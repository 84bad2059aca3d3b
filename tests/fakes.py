"""In-memory stand-ins for the CRDT document, the relay pool and the signer."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from relaydoc.core.envelope import (
    EventFilter,
    SignedEvent,
    SyncEnvelope,
    encode_envelope,
    room_tags,
)
from relaydoc.core.errors import ImportRejected
from relaydoc.core.kinds import EventKind
from relaydoc.sync.document import ORIGIN_IMPORT, ORIGIN_LOCAL, ChangeEvent, ExportMode

ROOM = "doc_test"
RELAYS = ("wss://relay-a.test", "wss://relay-b.test")


class FakeDocument:
    """A grow-only set of opaque operations, separated by ``|`` on the wire.

    ``version()`` is the number of operations held; an update export since
    version *n* is every operation after the first *n*.
    """

    def __init__(self) -> None:
        self.ops: list[bytes] = []
        self.imported: list[bytes] = []
        self._listeners: list[Callable[[ChangeEvent], None]] = []

    def edit(self, op: bytes) -> None:
        self.ops.append(op)
        self._notify(ChangeEvent(origin=ORIGIN_LOCAL, update=op))

    def import_bytes(self, data: bytes) -> None:
        if data.startswith(b"!"):
            raise ImportRejected("corrupt payload")
        self.imported.append(data)
        changed = False
        for op in data.split(b"|"):
            if op and op not in self.ops:
                self.ops.append(op)
                changed = True
        if changed:
            self._notify(ChangeEvent(origin=ORIGIN_IMPORT))

    def export(self, mode: ExportMode, since=None) -> bytes:
        if mode == ExportMode.SNAPSHOT or since is None:
            return b"|".join(self.ops)
        return b"|".join(self.ops[since:])

    def version(self) -> int:
        return len(self.ops)

    def subscribe(self, callback):
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    def _notify(self, event: ChangeEvent) -> None:
        for fn in list(self._listeners):
            fn(event)


class FakeSigner:
    """Deterministic signer: the public key is a hash of *secret*."""

    def __init__(self, secret: str = "alice") -> None:
        self.public_key = hashlib.sha256(secret.encode()).hexdigest()

    def sign(self, kind, content, tags=(), created_at=None) -> SignedEvent:
        created_at = created_at if created_at is not None else int(time.time())
        tags = tuple(tuple(t) for t in tags)
        serialized = json.dumps([0, self.public_key, created_at, int(kind), tags, content])
        return SignedEvent(
            id=hashlib.sha256(serialized.encode()).hexdigest(),
            pubkey=self.public_key,
            created_at=created_at,
            kind=int(kind),
            tags=tags,
            content=content,
            sig="00" * 64,
        )


def make_update(signer: FakeSigner, payload: bytes, *, room: str = ROOM, doc_id: str | None = None,
                created_at: int | None = None, kind: EventKind = EventKind.CRDT_UPDATE) -> SignedEvent:
    """A signed update (or snapshot) event carrying *payload*."""
    env_type = "snapshot" if kind == EventKind.DOCUMENT_SNAPSHOT else "update"
    envelope = SyncEnvelope(type=env_type, doc_id=doc_id or room, payload=payload)
    return signer.sign(kind, encode_envelope(envelope), room_tags(room), created_at)


@dataclass(eq=False)
class _Sub:
    relay: str
    filters: list[EventFilter]
    on_event: Callable
    on_eose: Callable | None
    pool: MemoryRelayPool
    closed: bool = False

    async def close(self) -> None:
        self.closed = True
        if self in self.pool.subscriptions:
            self.pool.subscriptions.remove(self)


@dataclass
class MemoryRelayPool:
    """Relays held in memory.  Published events are stored and echoed to
    every open subscription they match, like a real relay.
    """

    stored: dict[str, list[SignedEvent]] = field(default_factory=dict)
    published: list[tuple[str, SignedEvent]] = field(default_factory=list)
    subscriptions: list[_Sub] = field(default_factory=list)
    fail_publish: set[str] = field(default_factory=set)
    fail_subscribe: set[str] = field(default_factory=set)
    fail_query: set[str] = field(default_factory=set)
    replay: bool = True

    async def publish(self, relay: str, event: SignedEvent) -> None:
        if relay in self.fail_publish:
            raise ConnectionError(f"{relay} is down")
        self.published.append((relay, event))
        self.deliver(event, relays=(relay,))

    async def subscribe(self, relay, filters, on_event, on_eose=None):
        if relay in self.fail_subscribe:
            raise ConnectionError(f"{relay} refused the subscription")
        sub = _Sub(relay, list(filters), on_event, on_eose, self)
        self.subscriptions.append(sub)
        if self.replay:
            for event in list(self.stored.get(relay, [])):
                if any(f.matches(event) for f in filters):
                    on_event(relay, event)
        if on_eose is not None:
            on_eose(relay)
        return sub

    async def query(self, relay: str, filter: EventFilter, timeout: float) -> list[SignedEvent]:
        if relay in self.fail_query:
            raise TimeoutError(f"{relay} timed out")
        matching = [e for e in self.stored.get(relay, []) if filter.matches(e)]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        if filter.limit is not None:
            matching = matching[: filter.limit]
        return matching

    def store(self, event: SignedEvent, relays=RELAYS) -> None:
        """Put *event* in relay storage without notifying subscribers."""
        for relay in relays:
            self.stored.setdefault(relay, []).append(event)

    def deliver(self, event: SignedEvent, relays=RELAYS) -> None:
        """Store *event* and push it to matching subscriptions."""
        for relay in relays:
            self.stored.setdefault(relay, []).append(event)
            for sub in list(self.subscriptions):
                if sub.relay == relay and any(f.matches(event) for f in sub.filters):
                    sub.on_event(relay, event)

    def published_kinds(self, pubkey: str | None = None) -> list[int]:
        seen: set[str] = set()
        kinds = []
        for _relay, event in self.published:
            if event.id in seen or (pubkey is not None and event.pubkey != pubkey):
                continue
            seen.add(event.id)
            kinds.append(event.kind)
        return kinds
