"""Catch-up on (re)join: latest snapshot first, then stored updates in time order."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from relaydoc.core.envelope import EventFilter, SignedEvent, decode_envelope
from relaydoc.core.errors import EnvelopeDecodeError, ImportRejected
from relaydoc.core.kinds import EventKind
from relaydoc.sync.document import DocumentBinding
from relaydoc.sync.relays import RelaySessionManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    ok: bool
    snapshot_applied: bool = False
    updates_applied: int = 0
    skipped: int = 0
    fetched: int = 0
    fetched_bytes: int = 0
    latest_created_at: int = 0
    error: BaseException | None = None


class HistoryReconciler:
    """Fetch and apply a room's stored history.

    A decode or import failure skips that one event.  A fetch failure on
    every relay is reported through ``ReconcileOutcome.error``; it is never
    raised.
    """

    def __init__(
        self,
        session: RelaySessionManager,
        binding: DocumentBinding,
        *,
        limit: int = 100,
        mark_seen: Callable[[str], None] | None = None,
    ) -> None:
        self.session = session
        self.binding = binding
        self.limit = limit
        self._mark_seen = mark_seen

    async def reconcile(self, room_id: str) -> ReconcileOutcome:
        snapshot_filter = EventFilter(kinds=(EventKind.DOCUMENT_SNAPSHOT,), room=room_id, limit=1)
        update_filter = EventFilter(kinds=(EventKind.CRDT_UPDATE,), room=room_id, limit=self.limit)

        try:
            snapshots, updates = await asyncio.gather(
                self.session.query(snapshot_filter),
                self.session.query(update_filter),
            )
        except Exception as exc:
            logger.warning("history fetch for %s failed: %s", room_id, exc)
            return ReconcileOutcome(ok=False, error=exc)

        if not snapshots.ok and not updates.ok:
            errors = {**snapshots.failed, **updates.failed}
            error = RuntimeError(
                "History query failed on all relays: "
                + ", ".join(f"{r} ({e})" for r, e in errors.items())
            )
            logger.warning("%s", error)
            return ReconcileOutcome(ok=False, error=error)

        events = _merge(snapshots.events, updates.events)
        events.sort(key=lambda e: e.created_at)

        # Several relays may each return their own latest snapshot.
        snapshot_events = [e for e in events if e.kind == EventKind.DOCUMENT_SNAPSHOT]
        snapshot = snapshot_events[-1] if snapshot_events else None

        snapshot_applied = False
        updates_applied = 0
        skipped = 0
        latest = 0

        if snapshot is not None:
            if self._apply(snapshot, room_id):
                snapshot_applied = True
                latest = max(latest, snapshot.created_at)
            else:
                skipped += 1

        for event in events:
            if event.kind != EventKind.CRDT_UPDATE:
                continue
            if self._apply(event, room_id):
                updates_applied += 1
                latest = max(latest, event.created_at)
            else:
                skipped += 1

        logger.info(
            "history for %s: snapshot=%s updates=%d skipped=%d",
            room_id,
            snapshot_applied,
            updates_applied,
            skipped,
        )
        return ReconcileOutcome(
            ok=True,
            snapshot_applied=snapshot_applied,
            updates_applied=updates_applied,
            skipped=skipped,
            fetched=len(events),
            fetched_bytes=sum(len(e.content) for e in events),
            latest_created_at=latest,
        )

    def _apply(self, event: SignedEvent, room_id: str) -> bool:
        try:
            envelope = decode_envelope(event.content)
        except EnvelopeDecodeError as exc:
            logger.warning("skipping history event %s: %s", event.id, exc)
            return False

        if envelope.doc_id != room_id:
            logger.debug("skipping history event %s for doc %s", event.id, envelope.doc_id)
            return False

        try:
            self.binding.apply_remote(envelope.payload)
        except ImportRejected as exc:
            logger.warning("document rejected history event %s: %s", event.id, exc)
            return False
        except Exception:
            logger.exception("importing history event %s failed", event.id)
            return False

        if self._mark_seen is not None:
            self._mark_seen(event.id)
        return True


def _merge(*groups: list[SignedEvent]) -> list[SignedEvent]:
    seen: set[str] = set()
    merged: list[SignedEvent] = []
    for group in groups:
        for event in group:
            if event.id not in seen:
                seen.add(event.id)
                merged.append(event)
    return merged
