"""Tests for the nostr-sdk key, signing and notification adapters."""

from __future__ import annotations

import asyncio

import pytest

pytest.importorskip("nostr_sdk")

from relaydoc.core.envelope import EventFilter, room_tags  # noqa: E402
from relaydoc.core.errors import KeyFormatError  # noqa: E402
from relaydoc.core.kinds import EventKind  # noqa: E402
from relaydoc.nostr import (  # noqa: E402
    NostrKeySigner,
    _Dispatcher,
    _Route,
    event_to_sdk,
    filter_to_sdk,
    generate_keypair,
    import_keypair,
)


class TestKeys:
    def test_generate(self):
        pair = generate_keypair()
        assert len(pair.secret_hex) == 64
        assert len(pair.public_hex) == 64
        assert pair.nsec.startswith("nsec1")
        assert pair.npub.startswith("npub1")

    def test_hex_and_nsec_import_agree(self):
        pair = generate_keypair()
        assert import_keypair(pair.secret_hex) == pair
        assert import_keypair(pair.nsec) == pair

    def test_invalid_key(self):
        with pytest.raises(KeyFormatError):
            import_keypair("not-a-key")

    def test_signer_from_missing_secret_generates(self):
        signer = NostrKeySigner.from_secret(None)
        assert len(signer.public_key) == 64


class TestSigning:
    def test_signed_event_fields(self):
        pair = generate_keypair()
        signer = NostrKeySigner.from_secret(pair.secret_hex)
        event = signer.sign(EventKind.CRDT_UPDATE, '{"x":1}', room_tags("doc_1"), 1_700_000_000)
        assert event.pubkey == pair.public_hex
        assert event.kind == EventKind.CRDT_UPDATE
        assert event.room == "doc_1"
        assert event.created_at == 1_700_000_000
        assert len(event.id) == 64
        assert event.sig

    def test_converts_back_to_sdk(self):
        signer = NostrKeySigner.from_secret(None)
        event = signer.sign(EventKind.PRESENCE, "{}", room_tags("doc_1"))
        assert event_to_sdk(event).id().to_hex() == event.id

    def test_filter_conversion(self):
        f = filter_to_sdk(EventFilter(kinds=(EventKind.CRDT_UPDATE,), room="doc_1", limit=5))
        assert f is not None


class _Frame:
    def __init__(self, raw: str) -> None:
        self._raw = raw

    def as_json(self) -> str:
        return self._raw


class TestDispatcher:
    def _recorder(self):
        seen: list = []
        route = _Route(
            on_event=lambda relay, event: seen.append(("event", relay, event.id)),
            on_eose=lambda relay: seen.append(("eose", relay)),
        )
        return seen, route

    def _sdk_event(self, content: str):
        signer = NostrKeySigner.from_secret(None)
        event = signer.sign(EventKind.CRDT_UPDATE, content, room_tags("doc_1"))
        return event.id, event_to_sdk(event)

    def test_routed_notifications_delivered(self):
        dispatcher = _Dispatcher("wss://relay.test")
        seen, route = self._recorder()
        dispatcher.add_route("sub1", route)
        event_id, sdk_event = self._sdk_event("{}")
        asyncio.run(dispatcher.handle("wss://relay.test", "sub1", sdk_event))
        asyncio.run(dispatcher.handle_msg("wss://relay.test", _Frame('["EOSE","sub1"]')))
        assert seen == [("event", "wss://relay.test", event_id), ("eose", "wss://relay.test")]

    def test_early_notifications_replayed_on_route(self):
        dispatcher = _Dispatcher("wss://relay.test")
        event_id, sdk_event = self._sdk_event("{}")

        async def arrive_before_route():
            await dispatcher.handle("wss://relay.test", "sub1", sdk_event)
            await dispatcher.handle_msg("wss://relay.test", _Frame('["EOSE","sub1"]'))

        asyncio.run(arrive_before_route())
        seen, route = self._recorder()
        dispatcher.add_route("sub1", route)
        assert seen == [("event", "wss://relay.test", event_id), ("eose", "wss://relay.test")]
        assert dispatcher.pending == {}

    def test_held_notifications_are_bounded(self):
        dispatcher = _Dispatcher("wss://relay.test")
        for n in range(dispatcher.max_pending_ids + 3):
            asyncio.run(dispatcher.handle_msg("wss://relay.test", _Frame(f'["EOSE","sub{n}"]')))
        assert len(dispatcher.pending) == dispatcher.max_pending_ids
        assert "sub0" not in dispatcher.pending

    def test_removed_route_drops_held_notifications(self):
        dispatcher = _Dispatcher("wss://relay.test")
        asyncio.run(dispatcher.handle_msg("wss://relay.test", _Frame('["EOSE","sub1"]')))
        dispatcher.remove_route("sub1")
        seen, route = self._recorder()
        dispatcher.add_route("sub1", route)
        assert seen == []
