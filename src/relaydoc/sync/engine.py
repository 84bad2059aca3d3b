"""Sync engine: binds one CRDT document to a room on a set of Nostr relays.

Outbound: local commit -> UpdateBatcher -> envelope -> signed event -> relays.
Inbound: relay event -> dedupe -> decode -> probe handling -> self-echo
filter -> presence tracker or document import -> notifications.

Everything runs on one asyncio loop; relay callbacks, the batch timer and
local edits never run concurrently with each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from enum import Enum

from relaydoc.core.config import SyncOptions
from relaydoc.core.envelope import (
    Cursor,
    EventFilter,
    PingMessage,
    PongMessage,
    PresenceContent,
    PresenceMessage,
    ProbeContent,
    SignedEvent,
    SnapshotMessage,
    SyncEnvelope,
    decode_event,
    encode_envelope,
    encode_presence,
    encode_probe,
    now_ms,
)
from relaydoc.core.errors import ConnectError, EngineDestroyed, EnvelopeDecodeError, ImportRejected
from relaydoc.core.ids import generate_probe_id
from relaydoc.core.kinds import DOCUMENT_KINDS, PROBE_KINDS, EventKind, envelope_type_for
from relaydoc.sync.batcher import UpdateBatcher
from relaydoc.sync.bus import (
    AwarenessNotice,
    ConnectedNotice,
    DisconnectedNotice,
    ErrorNotice,
    PongNotice,
    RelayStatusNotice,
    SyncEvents,
    SyncNotice,
    UpdateNotice,
)
from relaydoc.sync.document import ChangeEvent, CrdtDocument, DocumentBinding
from relaydoc.sync.history import HistoryReconciler, ReconcileOutcome
from relaydoc.sync.metrics import MetricsCollector, SyncMetrics
from relaydoc.sync.presence import Participant, PresenceTracker, generate_color
from relaydoc.sync.relays import (
    PublishOutcome,
    RelayPool,
    RelaySessionManager,
    RelayStatus,
    Signer,
    SubscriptionSpec,
)

logger = logging.getLogger(__name__)

# Event ids remembered for cross-relay deduplication.
SEEN_EVENTS_MAX = 4096


class EngineState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    SYNCING = "syncing"
    SYNCED = "synced"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    DESTROYED = "destroyed"


class SyncEngine:
    """Keep one document in sync with everyone else in the same room.

    Args:
        document: The CRDT document to bind.  It must report commit origins
            so imported changes are not published again.
        options: Room, relays and tuning knobs.
        pool: Relay transport.
        signer: Event signer.  When omitted, one is built from
            ``options.private_key`` (or a fresh key) with nostr-sdk.
        events: Notification channels; a fresh set is created if omitted.

    Raises:
        KeyFormatError: If ``options.private_key`` cannot be parsed.
    """

    def __init__(
        self,
        document: CrdtDocument,
        options: SyncOptions,
        *,
        pool: RelayPool,
        signer: Signer | None = None,
        events: SyncEvents | None = None,
    ) -> None:
        if signer is None:
            from relaydoc.nostr import NostrKeySigner

            signer = NostrKeySigner.from_secret(options.private_key)

        self.options = options
        self.signer = signer
        self.events = events if events is not None else SyncEvents()
        self.state = EngineState.IDLE
        self.last_sync_timestamp = 0

        self.binding = DocumentBinding(options.room_id, document)
        self.session = RelaySessionManager(
            pool,
            options.relays,
            on_status=self._on_relay_status,
            query_timeout=options.query_timeout_s,
        )
        self.batcher = UpdateBatcher(
            self.binding.export_delta,
            self._publish_update,
            interval=options.batch_interval,
        )
        self.presence = PresenceTracker(ttl_seconds=options.presence_ttl_s)
        self.collector = MetricsCollector(
            max_samples=options.latency_samples,
            probe_timeout_s=options.probe_timeout_s,
        )
        self.history = HistoryReconciler(
            self.session,
            self.binding,
            limit=options.history_limit,
            mark_seen=self._remember,
        )
        self.collector.set_relay_counts(0, len(self.session.relays))

        self._seen: OrderedDict[str, None] = OrderedDict()
        self._accepting = False
        self._eose_seen = False
        self._offline_changes = False
        self._tasks: set[asyncio.Task] = set()

        self.binding.bind(self._on_local_change)

    # -- identity and state --------------------------------------------------

    @property
    def room_id(self) -> str:
        return self.options.room_id

    @property
    def public_key(self) -> str:
        return self.signer.public_key

    @property
    def npub(self) -> str | None:
        """Bech32 public key, when the signer can render one."""
        return getattr(self.signer, "npub", None)

    @property
    def is_connected(self) -> bool:
        return self._accepting and self.session.is_open

    @property
    def participants(self) -> list[Participant]:
        return self.presence.snapshot()

    def metrics(self) -> SyncMetrics:
        return self.collector.snapshot()

    def reset_metrics(self) -> None:
        self.collector.reset()
        self.events.metrics.emit(self.collector.snapshot())

    def _check_alive(self) -> None:
        if self.state == EngineState.DESTROYED:
            raise EngineDestroyed(f"Engine for room {self.room_id!r} was destroyed")

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Subscribe to the room on every relay, then catch up on history.

        Raises:
            ConnectError: If no relay accepted the subscriptions.
            EngineDestroyed: If the engine was destroyed.
        """
        self._check_alive()
        self.state = EngineState.CONNECTING
        self._eose_seen = False

        now = int(time.time())
        doc_filter = EventFilter(
            kinds=DOCUMENT_KINDS,
            room=self.room_id,
            since=self.last_sync_timestamp or None,
        )
        presence_filter = EventFilter(
            kinds=(EventKind.PRESENCE,),
            room=self.room_id,
            since=now - self.options.presence_window_s,
        )
        probe_filter = EventFilter(kinds=PROBE_KINDS, room=self.room_id, since=now)
        specs = [
            SubscriptionSpec([doc_filter], self._on_event, self._on_document_eose),
            SubscriptionSpec([presence_filter, probe_filter], self._on_event),
        ]

        self._accepting = True
        try:
            live = await self.session.open(specs)
        except Exception as exc:
            self._accepting = False
            self.state = EngineState.ERROR
            self.events.error.emit(ErrorNotice("Connection failed", exc))
            if isinstance(exc, ConnectError):
                raise
            raise ConnectError(f"Connection failed: {exc}") from exc

        self.state = EngineState.SUBSCRIBED
        logger.info(
            "room %s: subscribed on %d/%d relays", self.room_id, len(live), len(self.session.relays)
        )
        self.events.connected.emit(ConnectedNotice(relays=live))

        if self.options.sync_on_connect:
            await self.sync_history()
        elif self._eose_seen:
            # Stored events were replayed while the subscriptions opened.
            self._mark_live_synced()

        if self._offline_changes:
            self._offline_changes = False
            self.batcher.enqueue(b"")

    async def sync_history(self) -> ReconcileOutcome:
        """Fetch and apply the room's stored snapshot and updates.

        Raises:
            ConnectError: If the engine is not connected.
            EngineDestroyed: If the engine was destroyed.
        """
        self._check_alive()
        if not self._accepting:
            raise ConnectError(f"Room {self.room_id!r} is not connected")
        self.state = EngineState.SYNCING
        self.events.sync.emit(SyncNotice(status="syncing"))

        outcome = await self.history.reconcile(self.room_id)
        if not self._accepting:
            return outcome

        if not outcome.ok:
            self.state = EngineState.ERROR
            self.events.error.emit(ErrorNotice("Failed to fetch history", outcome.error))
            return outcome

        self.last_sync_timestamp = max(self.last_sync_timestamp, outcome.latest_created_at)
        self.collector.record_received(outcome.fetched_bytes, count=outcome.fetched)
        self.collector.record_sync()
        self.state = EngineState.SYNCED
        self.events.sync.emit(SyncNotice(status="synced"))
        return outcome

    async def disconnect(self) -> None:
        """Flush pending updates, drop subscriptions.  Idempotent, never raises."""
        if self.state in (EngineState.IDLE, EngineState.DISCONNECTED, EngineState.DESTROYED):
            self.batcher.cancel()
            return

        if self._accepting and self.batcher.pending_count:
            try:
                await self.batcher.flush()
            except Exception:
                logger.exception("room %s: final flush failed", self.room_id)
        self.batcher.cancel()

        self._accepting = False
        try:
            await self.session.close()
        except Exception:
            logger.exception("room %s: closing relay session failed", self.room_id)

        self.state = EngineState.DISCONNECTED
        logger.info("room %s: disconnected", self.room_id)
        self.events.disconnected.emit(DisconnectedNotice())

    async def destroy(self) -> None:
        """Disconnect and release the document and every listener.  Terminal."""
        if self.state == EngineState.DESTROYED:
            return
        await self.disconnect()
        self.binding.release()
        self.presence.clear()
        self.events.clear()
        self.state = EngineState.DESTROYED

    # -- outbound ------------------------------------------------------------

    def _on_local_change(self, event: ChangeEvent) -> None:
        if self.state == EngineState.DESTROYED:
            return
        if not self._accepting:
            # Published by the first flush after the next connect().
            self._offline_changes = True
            return
        self.batcher.enqueue(event.update)

    async def _publish(self, kind: EventKind, content: str) -> PublishOutcome:
        outcome = await self.session.publish(kind, content, self.signer, self.room_id)
        if outcome.ok:
            self.collector.record_sent(len(content))
        return outcome

    async def _publish_update(self, delta: bytes) -> PublishOutcome:
        envelope = SyncEnvelope(
            type=envelope_type_for(EventKind.CRDT_UPDATE), doc_id=self.room_id, payload=delta
        )
        outcome = await self._publish(EventKind.CRDT_UPDATE, encode_envelope(envelope))
        if not outcome.ok:
            self.events.error.emit(
                ErrorNotice("Failed to publish update", _first_error(outcome))
            )
        return outcome

    async def flush(self) -> bytes | None:
        """Publish pending local changes now instead of waiting for the timer."""
        return await self.batcher.flush()

    async def publish_snapshot(self) -> PublishOutcome:
        """Publish the full document state as the room's latest snapshot."""
        self._check_alive()
        envelope = SyncEnvelope(
            type=envelope_type_for(EventKind.DOCUMENT_SNAPSHOT),
            doc_id=self.room_id,
            payload=self.binding.export_snapshot(),
        )
        outcome = await self._publish(EventKind.DOCUMENT_SNAPSHOT, encode_envelope(envelope))
        if outcome.ok:
            self.events.sync.emit(SyncNotice(status="synced", snapshot=True))
        else:
            self.events.error.emit(
                ErrorNotice("Failed to publish snapshot", _first_error(outcome))
            )
        return outcome

    async def update_presence(
        self,
        name: str | None = None,
        cursor: Cursor | tuple[int, int] | None = None,
    ) -> PublishOutcome | None:
        """Broadcast our name and cursor.  Failures are logged, never raised."""
        self._check_alive()
        if isinstance(cursor, tuple):
            cursor = Cursor(anchor=cursor[0], head=cursor[1])
        presence = PresenceContent(
            name=name,
            cursor=cursor,
            color=generate_color(self.public_key),
        )
        try:
            outcome = await self._publish(EventKind.PRESENCE, encode_presence(presence))
        except Exception as exc:
            logger.warning("room %s: presence publish failed: %s", self.room_id, exc)
            return None
        if not outcome.ok:
            logger.warning("room %s: presence rejected by all relays", self.room_id)
        return outcome

    async def ping(self) -> str:
        """Send a latency probe.  Returns its id.

        The measurement completes when our own ping comes back from a relay
        or a peer answers with a pong, whichever is first.
        """
        self._check_alive()
        probe_id = generate_probe_id()
        sent_at = now_ms()
        self.collector.start_probe(probe_id, sent_at)
        content = encode_probe(
            ProbeContent(type="ping", probe_id=probe_id, doc_id=self.room_id, timestamp=sent_at)
        )
        outcome = await self._publish(EventKind.PING, content)
        if not outcome.ok:
            self.events.error.emit(ErrorNotice("Failed to publish ping", _first_error(outcome)))
        return probe_id

    # -- inbound -------------------------------------------------------------

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        self._seen.move_to_end(event_id)
        while len(self._seen) > SEEN_EVENTS_MAX:
            self._seen.popitem(last=False)

    def _on_document_eose(self, relay: str) -> None:
        if self._eose_seen or not self._accepting:
            return
        self._eose_seen = True
        self._mark_live_synced()

    def _mark_live_synced(self) -> None:
        if self.state == EngineState.SUBSCRIBED:
            self.state = EngineState.SYNCED
            self.collector.record_sync()
            self.events.sync.emit(SyncNotice(status="synced"))

    def _on_event(self, relay: str, event: SignedEvent) -> None:
        if not self._accepting:
            return
        if event.id in self._seen:
            return
        self._remember(event.id)

        if event.room != self.room_id:
            logger.debug("dropping event %s for room %s", event.id, event.room)
            return

        self.collector.record_received(len(event.content))

        try:
            message = decode_event(event)
        except EnvelopeDecodeError as exc:
            logger.warning("dropping malformed event %s from %s: %s", event.id, relay, exc)
            return
        if message is None:
            return

        if isinstance(message, (PingMessage, PongMessage)):
            self._handle_probe(message, relay)
            return

        if event.pubkey == self.public_key:
            return

        if isinstance(message, PresenceMessage):
            self.presence.ingest(event.pubkey, message.presence, time.time())
            self.events.awareness.emit(AwarenessNotice(tuple(self.presence.snapshot())))
            return

        envelope = message.envelope
        if envelope.doc_id != self.room_id:
            logger.debug("dropping envelope for doc %s", envelope.doc_id)
            return

        try:
            self.binding.apply_remote(envelope.payload)
        except ImportRejected as exc:
            logger.warning("document rejected event %s: %s", event.id, exc)
            return
        except Exception:
            logger.exception("importing event %s failed", event.id)
            return

        self.last_sync_timestamp = max(self.last_sync_timestamp, event.created_at)
        self.collector.record_sync()
        if isinstance(message, SnapshotMessage):
            self.events.sync.emit(SyncNotice(status="synced", snapshot=True))
        else:
            self.events.update.emit(
                UpdateNotice(author=event.pubkey, created_at=event.created_at, event_id=event.id)
            )

    def _handle_probe(self, message: PingMessage | PongMessage, relay: str) -> None:
        probe = message.probe
        if probe.doc_id != self.room_id:
            return

        own = message.event.pubkey == self.public_key
        if isinstance(message, PingMessage) and not own:
            self._spawn(self._reply_pong(probe))
            return
        if isinstance(message, PongMessage) and own:
            return

        done = self.collector.complete_probe(probe.probe_id, relay=relay)
        if done is None or done.latency is None:
            return
        self.events.pong.emit(PongNotice(probe_id=done.probe_id, latency_ms=done.latency, relay=relay))
        self.events.metrics.emit(self.collector.snapshot())

    async def _reply_pong(self, ping: ProbeContent) -> None:
        content = encode_probe(
            ProbeContent(type="pong", probe_id=ping.probe_id, doc_id=self.room_id, timestamp=now_ms())
        )
        try:
            await self._publish(EventKind.PONG, content)
        except Exception as exc:
            logger.debug("pong for %s failed: %s", ping.probe_id, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_relay_status(self, relay: str, status: RelayStatus) -> None:
        self.collector.set_relay_counts(self.session.connected_count(), len(self.session.relays))
        self.events.relay_status.emit(RelayStatusNotice(relay=relay, status=status.value))


def _first_error(outcome: PublishOutcome) -> BaseException | None:
    for error in outcome.failed.values():
        return error
    return None
