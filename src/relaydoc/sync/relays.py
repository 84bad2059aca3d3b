"""Relay session management: subscriptions, queries and publishes across relays.

Every relay is independent.  An operation succeeds when at least one relay
accepts it; per-relay failures only change that relay's status.  The
manager is the only writer of relay status.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from relaydoc.core.envelope import EventFilter, SignedEvent, room_tags
from relaydoc.core.errors import ConnectError

logger = logging.getLogger(__name__)


class RelayStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Collaborator interfaces (transport + signing)
# ---------------------------------------------------------------------------


class Signer(Protocol):
    @property
    def public_key(self) -> str: ...

    def sign(
        self,
        kind: int,
        content: str,
        tags: tuple[tuple[str, ...], ...] = (),
        created_at: int | None = None,
    ) -> SignedEvent: ...


class RelaySubscription(Protocol):
    async def close(self) -> None: ...


EventCallback = Callable[[str, SignedEvent], None]
EoseCallback = Callable[[str], None]


class RelayPool(Protocol):
    """Per-relay transport operations.  Failures are raised as exceptions."""

    async def publish(self, relay: str, event: SignedEvent) -> None: ...

    async def subscribe(
        self,
        relay: str,
        filters: list[EventFilter],
        on_event: EventCallback,
        on_eose: EoseCallback | None = None,
    ) -> RelaySubscription: ...

    async def query(self, relay: str, filter: EventFilter, timeout: float) -> list[SignedEvent]: ...


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PublishOutcome:
    event: SignedEvent
    accepted: tuple[str, ...]
    failed: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.accepted)


@dataclass(frozen=True)
class QueryOutcome:
    events: list[SignedEvent]
    answered: tuple[str, ...]
    failed: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.answered)


@dataclass
class SubscriptionSpec:
    """One logical subscription opened on every relay."""

    filters: list[EventFilter]
    on_event: EventCallback
    on_eose: EoseCallback | None = None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class RelaySessionManager:
    """Fan relay operations out over a fixed set of relay URLs."""

    def __init__(
        self,
        pool: RelayPool,
        relays: tuple[str, ...] | list[str],
        *,
        on_status: Callable[[str, RelayStatus], None] | None = None,
        query_timeout: float = 10.0,
    ) -> None:
        if not relays:
            raise ValueError("At least one relay is required")
        self.pool = pool
        self.relays: tuple[str, ...] = tuple(dict.fromkeys(relays))
        self.query_timeout = query_timeout
        self._on_status = on_status
        self._status: dict[str, RelayStatus] = {r: RelayStatus.DISCONNECTED for r in self.relays}
        self._subscriptions: dict[str, list[RelaySubscription]] = {}
        self._open = False

    # -- status --------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    def status(self, relay: str) -> RelayStatus:
        return self._status[relay]

    def statuses(self) -> dict[str, RelayStatus]:
        return dict(self._status)

    def connected_count(self) -> int:
        return sum(1 for s in self._status.values() if s == RelayStatus.CONNECTED)

    def _set_status(self, relay: str, status: RelayStatus) -> None:
        if self._status.get(relay) == status:
            return
        self._status[relay] = status
        logger.debug("relay %s: %s", relay, status.value)
        if self._on_status is not None:
            self._on_status(relay, status)

    # -- lifecycle -----------------------------------------------------------

    async def open(self, specs: list[SubscriptionSpec]) -> tuple[str, ...]:
        """Open every subscription on every relay.

        Returns the relays on which all subscriptions were established.

        Raises:
            ConnectError: If no relay accepted the subscriptions.
        """
        if self._open:
            await self.close()

        results = await asyncio.gather(
            *(self._open_relay(relay, specs) for relay in self.relays),
            return_exceptions=True,
        )

        live: list[str] = []
        errors: dict[str, BaseException] = {}
        for relay, result in zip(self.relays, results):
            if isinstance(result, BaseException):
                errors[relay] = result
                self._set_status(relay, RelayStatus.ERROR)
                logger.warning("relay %s: subscribe failed: %s", relay, result)
            else:
                live.append(relay)
                self._set_status(relay, RelayStatus.CONNECTED)

        if not live:
            raise ConnectError(
                "All relays failed to subscribe: "
                + ", ".join(f"{r} ({e})" for r, e in errors.items())
            )

        self._open = True
        return tuple(live)

    async def _open_relay(self, relay: str, specs: list[SubscriptionSpec]) -> None:
        self._set_status(relay, RelayStatus.CONNECTING)
        opened: list[RelaySubscription] = []
        try:
            for spec in specs:
                sub = await self.pool.subscribe(relay, spec.filters, spec.on_event, spec.on_eose)
                opened.append(sub)
        except BaseException:
            for sub in opened:
                await _close_quietly(relay, sub)
            raise
        self._subscriptions[relay] = opened

    async def close(self) -> None:
        """Release every subscription.  Idempotent."""
        subscriptions, self._subscriptions = self._subscriptions, {}
        for relay, subs in subscriptions.items():
            for sub in subs:
                await _close_quietly(relay, sub)
        for relay in self.relays:
            self._set_status(relay, RelayStatus.DISCONNECTED)
        self._open = False

    # -- operations ----------------------------------------------------------

    async def publish(
        self,
        kind: int,
        content: str,
        signer: Signer,
        room_id: str,
    ) -> PublishOutcome:
        """Sign *content* as an event of *kind* tagged with *room_id* and send it."""
        event = signer.sign(kind, content, room_tags(room_id), int(time.time()))
        return await self.publish_event(event)

    async def publish_event(self, event: SignedEvent) -> PublishOutcome:
        results = await asyncio.gather(
            *(self.pool.publish(relay, event) for relay in self.relays),
            return_exceptions=True,
        )
        accepted: list[str] = []
        failed: dict[str, BaseException] = {}
        for relay, result in zip(self.relays, results):
            if isinstance(result, BaseException):
                failed[relay] = result
                logger.debug("relay %s rejected event %s: %s", relay, event.id, result)
            else:
                accepted.append(relay)
        if not accepted:
            logger.warning("event %s (kind %d) rejected by all relays", event.id, event.kind)
        return PublishOutcome(event=event, accepted=tuple(accepted), failed=failed)

    async def query(self, filter: EventFilter) -> QueryOutcome:
        """One-shot fetch from every relay.  Events are deduplicated by id."""
        results = await asyncio.gather(
            *(self.pool.query(relay, filter, self.query_timeout) for relay in self.relays),
            return_exceptions=True,
        )
        seen: set[str] = set()
        events: list[SignedEvent] = []
        answered: list[str] = []
        failed: dict[str, BaseException] = {}
        for relay, result in zip(self.relays, results):
            if isinstance(result, BaseException):
                failed[relay] = result
                logger.debug("relay %s query failed: %s", relay, result)
                continue
            answered.append(relay)
            for event in result:
                if event.id not in seen:
                    seen.add(event.id)
                    events.append(event)
        return QueryOutcome(events=events, answered=tuple(answered), failed=failed)


async def _close_quietly(relay: str, sub: RelaySubscription) -> None:
    try:
        await sub.close()
    except Exception as exc:
        logger.debug("relay %s: closing subscription failed: %s", relay, exc)
