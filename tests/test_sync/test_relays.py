"""Tests for RelaySessionManager fan-out."""

from __future__ import annotations

import asyncio

import pytest
from fakes import RELAYS, ROOM, FakeSigner, MemoryRelayPool, make_update

from relaydoc.core.envelope import EventFilter
from relaydoc.core.errors import ConnectError
from relaydoc.core.kinds import EventKind
from relaydoc.sync.relays import RelaySessionManager, RelayStatus, SubscriptionSpec

A, B = RELAYS


def _manager(pool: MemoryRelayPool, statuses: list | None = None) -> RelaySessionManager:
    on_status = (lambda relay, status: statuses.append((relay, status))) if statuses is not None else None
    return RelaySessionManager(pool, RELAYS, on_status=on_status, query_timeout=1.0)


def _spec(received: list) -> SubscriptionSpec:
    return SubscriptionSpec(
        [EventFilter(kinds=(EventKind.CRDT_UPDATE,), room=ROOM)],
        lambda relay, event: received.append((relay, event.id)),
    )


class TestOpen:
    def test_all_relays_connected(self) -> None:
        pool = MemoryRelayPool()
        statuses: list = []
        manager = _manager(pool, statuses)
        live = asyncio.run(manager.open([_spec([])]))
        assert live == RELAYS
        assert manager.is_open
        assert manager.connected_count() == 2
        assert (A, RelayStatus.CONNECTING) in statuses
        assert (A, RelayStatus.CONNECTED) in statuses

    def test_partial_failure_still_opens(self) -> None:
        pool = MemoryRelayPool(fail_subscribe={A})
        manager = _manager(pool)
        live = asyncio.run(manager.open([_spec([])]))
        assert live == (B,)
        assert manager.status(A) == RelayStatus.ERROR
        assert manager.status(B) == RelayStatus.CONNECTED

    def test_all_fail_raises(self) -> None:
        pool = MemoryRelayPool(fail_subscribe=set(RELAYS))
        manager = _manager(pool)
        with pytest.raises(ConnectError):
            asyncio.run(manager.open([_spec([])]))
        assert not manager.is_open
        assert set(manager.statuses().values()) == {RelayStatus.ERROR}

    def test_close_is_idempotent(self) -> None:
        pool = MemoryRelayPool()
        manager = _manager(pool)

        async def scenario():
            await manager.open([_spec([])])
            await manager.close()
            await manager.close()

        asyncio.run(scenario())
        assert pool.subscriptions == []
        assert set(manager.statuses().values()) == {RelayStatus.DISCONNECTED}
        assert not manager.is_open

    def test_empty_relay_list_rejected(self) -> None:
        with pytest.raises(ValueError):
            RelaySessionManager(MemoryRelayPool(), ())


class TestPublish:
    def test_tags_and_signs(self) -> None:
        pool = MemoryRelayPool()
        outcome = asyncio.run(_manager(pool).publish(EventKind.CRDT_UPDATE, "{}", FakeSigner(), ROOM))
        assert outcome.ok
        assert outcome.accepted == RELAYS
        assert outcome.event.room == ROOM
        assert outcome.event.kind == EventKind.CRDT_UPDATE

    def test_one_relay_enough(self) -> None:
        pool = MemoryRelayPool(fail_publish={A})
        outcome = asyncio.run(_manager(pool).publish(EventKind.CRDT_UPDATE, "{}", FakeSigner(), ROOM))
        assert outcome.ok
        assert outcome.accepted == (B,)
        assert isinstance(outcome.failed[A], ConnectionError)

    def test_all_rejected(self) -> None:
        pool = MemoryRelayPool(fail_publish=set(RELAYS))
        outcome = asyncio.run(_manager(pool).publish(EventKind.CRDT_UPDATE, "{}", FakeSigner(), ROOM))
        assert not outcome.ok
        assert set(outcome.failed) == set(RELAYS)


class TestQuery:
    def test_union_deduplicated(self) -> None:
        pool = MemoryRelayPool()
        bob = FakeSigner("bob")
        shared = make_update(bob, b"x", created_at=100)
        only_b = make_update(bob, b"y", created_at=101)
        pool.store(shared)
        pool.store(only_b, relays=(B,))

        outcome = asyncio.run(_manager(pool).query(EventFilter(kinds=(EventKind.CRDT_UPDATE,), room=ROOM)))
        assert outcome.ok
        assert sorted(e.id for e in outcome.events) == sorted([shared.id, only_b.id])

    def test_partial_failure(self) -> None:
        pool = MemoryRelayPool(fail_query={A})
        pool.store(make_update(FakeSigner("bob"), b"x"), relays=(B,))
        outcome = asyncio.run(_manager(pool).query(EventFilter(kinds=(EventKind.CRDT_UPDATE,), room=ROOM)))
        assert outcome.answered == (B,)
        assert len(outcome.events) == 1
        assert A in outcome.failed

    def test_all_fail(self) -> None:
        pool = MemoryRelayPool(fail_query=set(RELAYS))
        outcome = asyncio.run(_manager(pool).query(EventFilter(kinds=(EventKind.CRDT_UPDATE,), room=ROOM)))
        assert not outcome.ok
        assert outcome.events == []
