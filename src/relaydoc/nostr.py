"""nostr-sdk adapters: key handling, event signing and a per-relay client pool.

Wire framing, websocket handling and Schnorr signatures all live in
nostr-sdk.  This module only converts between its types and
``relaydoc.core.envelope`` and implements the ``Signer`` and ``RelayPool``
interfaces the sync engine consumes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from nostr_sdk import (
    Alphabet,
    Client,
    EventBuilder,
    Filter,
    HandleNotification,
    Keys,
    Kind,
    PublicKey,
    RelayUrl,
    SingleLetterTag,
    Tag,
    Timestamp,
)
from nostr_sdk import Event as NostrEvent

from relaydoc.core.envelope import EventFilter, SignedEvent
from relaydoc.core.errors import KeyFormatError
from relaydoc.core.kinds import ROOM_TAG

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Keys and signing
# ---------------------------------------------------------------------------


def parse_keys(secret: str) -> Keys:
    """Parse a hex or ``nsec`` secret key.

    Raises:
        KeyFormatError: If *secret* is not a valid secret key.
    """
    try:
        return Keys.parse(secret.strip())
    except Exception as exc:
        raise KeyFormatError("Invalid private key format") from exc


@dataclass(frozen=True)
class KeyPair:
    secret_hex: str
    public_hex: str
    nsec: str
    npub: str

    @classmethod
    def from_keys(cls, keys: Keys) -> KeyPair:
        return cls(
            secret_hex=keys.secret_key().to_hex(),
            public_hex=keys.public_key().to_hex(),
            nsec=keys.secret_key().to_bech32(),
            npub=keys.public_key().to_bech32(),
        )


def generate_keypair() -> KeyPair:
    return KeyPair.from_keys(Keys.generate())


def import_keypair(secret: str) -> KeyPair:
    return KeyPair.from_keys(parse_keys(secret))


class NostrKeySigner:
    """Sign events with a Nostr secret key."""

    def __init__(self, keys: Keys) -> None:
        self._keys = keys
        self._public_hex = keys.public_key().to_hex()

    @classmethod
    def from_secret(cls, secret: str | None) -> NostrKeySigner:
        """Build a signer from *secret*, or from a fresh key if it is ``None``."""
        if secret is None:
            return cls(Keys.generate())
        return cls(parse_keys(secret))

    @property
    def public_key(self) -> str:
        return self._public_hex

    @property
    def npub(self) -> str:
        return self._keys.public_key().to_bech32()

    def sign(
        self,
        kind: int,
        content: str,
        tags: tuple[tuple[str, ...], ...] = (),
        created_at: int | None = None,
    ) -> SignedEvent:
        builder = EventBuilder(Kind(kind), content).tags([Tag.parse(list(t)) for t in tags])
        if created_at is not None:
            builder = builder.custom_created_at(Timestamp.from_secs(created_at))
        return event_from_sdk(builder.sign_with_keys(self._keys))


# ---------------------------------------------------------------------------
# Type conversion
# ---------------------------------------------------------------------------


def event_from_sdk(event: NostrEvent) -> SignedEvent:
    return SignedEvent.from_dict(json.loads(event.as_json()))


def event_to_sdk(event: SignedEvent) -> NostrEvent:
    return NostrEvent.from_json(json.dumps(event.to_dict()))


def filter_to_sdk(event_filter: EventFilter) -> Filter:
    f = Filter().kinds([Kind(k) for k in event_filter.kinds])
    if event_filter.room is not None:
        tag = SingleLetterTag.lowercase(getattr(Alphabet, ROOM_TAG.upper()))
        f = f.custom_tag(tag, event_filter.room)
    if event_filter.since is not None:
        f = f.since(Timestamp.from_secs(event_filter.since))
    if event_filter.limit is not None:
        f = f.limit(event_filter.limit)
    if event_filter.authors is not None:
        f = f.authors([PublicKey.parse(a) for a in event_filter.authors])
    return f


# ---------------------------------------------------------------------------
# Relay pool
# ---------------------------------------------------------------------------


class PublishRejected(Exception):
    """A relay did not acknowledge an event."""


@dataclass
class _Route:
    on_event: Callable[[str, SignedEvent], None]
    on_eose: Callable[[str], None] | None


class _Dispatcher(HandleNotification):
    """Route a client's notifications to per-subscription callbacks.

    A relay may answer before ``client.subscribe()`` returns the id, so
    notifications for unknown ids are held (bounded) and replayed when the
    route is added.
    """

    max_pending_ids = 16
    max_pending_per_id = 1024

    def __init__(self, relay: str) -> None:
        super().__init__()
        self.relay = relay
        self.routes: dict[str, _Route] = {}
        self.pending: OrderedDict[str, list[SignedEvent | None]] = OrderedDict()

    def add_route(self, sub_id: str, route: _Route) -> None:
        """Register *route* and replay what arrived for *sub_id* before it."""
        self.routes[sub_id] = route
        for item in self.pending.pop(sub_id, []):
            self._deliver(route, item)

    def remove_route(self, sub_id: str) -> None:
        self.routes.pop(sub_id, None)
        self.pending.pop(sub_id, None)

    def _dispatch(self, sub_id: str, item: SignedEvent | None) -> None:
        route = self.routes.get(sub_id)
        if route is not None:
            self._deliver(route, item)
            return
        held = self.pending.setdefault(sub_id, [])
        self.pending.move_to_end(sub_id)
        if len(held) < self.max_pending_per_id:
            held.append(item)
        while len(self.pending) > self.max_pending_ids:
            dropped, _ = self.pending.popitem(last=False)
            logger.debug("relay %s: dropped notifications for %s", self.relay, dropped)

    def _deliver(self, route: _Route, item: SignedEvent | None) -> None:
        # None marks end of stored events.
        if item is None:
            if route.on_eose is not None:
                route.on_eose(self.relay)
        else:
            route.on_event(self.relay, item)

    async def handle(self, relay_url, subscription_id, event) -> None:  # noqa: ARG002
        try:
            converted = event_from_sdk(event)
        except (KeyError, ValueError) as exc:
            logger.debug("relay %s: unreadable event: %s", self.relay, exc)
            return
        self._dispatch(str(subscription_id), converted)

    async def handle_msg(self, relay_url, msg) -> None:  # noqa: ARG002
        try:
            frame = json.loads(msg.as_json())
        except (ValueError, AttributeError):
            return
        if not frame or frame[0] != "EOSE" or len(frame) < 2:
            return
        self._dispatch(str(frame[1]), None)


class _Subscription:
    def __init__(self, client: Client, dispatcher: _Dispatcher, ids: list[str]) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._ids = ids

    async def close(self) -> None:
        ids, self._ids = self._ids, []
        for sub_id in ids:
            self._dispatcher.remove_route(sub_id)
            await self._client.unsubscribe(sub_id)


class NostrRelayPool:
    """One nostr-sdk ``Client`` per relay, connected lazily."""

    def __init__(self) -> None:
        self._clients: dict[str, Client] = {}
        self._dispatchers: dict[str, _Dispatcher] = {}
        self._listeners: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def _client(self, relay: str) -> Client:
        async with self._lock:
            client = self._clients.get(relay)
            if client is None:
                client = Client()
                await client.add_relay(RelayUrl.parse(relay))
                await client.connect()
                self._clients[relay] = client
                logger.debug("relay %s: client started", relay)
            return client

    async def publish(self, relay: str, event: SignedEvent) -> None:
        client = await self._client(relay)
        output = await client.send_event(event_to_sdk(event))
        if not output.success:
            raise PublishRejected(f"{relay} rejected {event.id}: {output.failed}")

    async def subscribe(self, relay, filters, on_event, on_eose=None) -> _Subscription:
        client = await self._client(relay)
        dispatcher = self._dispatchers.get(relay)
        if dispatcher is None:
            dispatcher = _Dispatcher(relay)
            self._dispatchers[relay] = dispatcher
            self._listeners[relay] = asyncio.ensure_future(client.handle_notifications(dispatcher))

        ids: list[str] = []
        for event_filter in filters:
            output = await client.subscribe(filter_to_sdk(event_filter))
            sub_id = str(output.id)
            dispatcher.add_route(sub_id, _Route(on_event=on_event, on_eose=on_eose))
            ids.append(sub_id)
        return _Subscription(client, dispatcher, ids)

    async def query(self, relay: str, filter: EventFilter, timeout: float) -> list[SignedEvent]:
        client = await self._client(relay)
        events = await client.fetch_events(filter_to_sdk(filter), timedelta(seconds=timeout))
        return [event_from_sdk(e) for e in events.to_vec()]

    async def aclose(self) -> None:
        """Stop every listener and disconnect every client."""
        for task in self._listeners.values():
            task.cancel()
        self._listeners.clear()
        self._dispatchers.clear()
        clients, self._clients = self._clients, {}
        for relay, client in clients.items():
            try:
                await client.disconnect()
            except Exception as exc:
                logger.debug("relay %s: disconnect failed: %s", relay, exc)
