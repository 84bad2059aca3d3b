"""Typed notification channels for sync engine lifecycle signals.

Listeners are fire-and-forget: failures are logged but never raise
exceptions or interrupt the sync path.  Each signal has its own
``Channel`` so a listener cannot subscribe to a misspelled event name.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from relaydoc.sync.metrics import SyncMetrics
from relaydoc.sync.presence import Participant

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Channel(Generic[T]):
    """A list of listeners for one notification type."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[[T], None]] = []

    def connect(self, fn: Callable[[T], None]) -> Callable[[], None]:
        """Register *fn*.  Returns a callable that unregisters it."""
        self._listeners.append(fn)
        return lambda: self.disconnect(fn)

    def disconnect(self, fn: Callable[[T], None]) -> None:
        try:
            self._listeners.remove(fn)
        except ValueError:
            pass

    def emit(self, payload: T) -> None:
        """Fire all registered listeners.  Never raises."""
        for fn in list(self._listeners):
            try:
                fn(payload)
            except Exception:
                logger.exception("%s listener failed", self.name)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)


# ---------------------------------------------------------------------------
# Notification payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectedNotice:
    relays: tuple[str, ...]


@dataclass(frozen=True)
class DisconnectedNotice:
    pass


@dataclass(frozen=True)
class SyncNotice:
    status: str  # "syncing" or "synced"
    snapshot: bool = False


@dataclass(frozen=True)
class UpdateNotice:
    author: str
    created_at: int
    event_id: str


@dataclass(frozen=True)
class AwarenessNotice:
    participants: tuple[Participant, ...]


@dataclass(frozen=True)
class ErrorNotice:
    message: str
    error: BaseException | None = None


@dataclass(frozen=True)
class PongNotice:
    probe_id: str
    latency_ms: int
    relay: str | None = None


@dataclass(frozen=True)
class RelayStatusNotice:
    relay: str
    status: str


@dataclass
class SyncEvents:
    """One channel per engine signal."""

    connected: Channel[ConnectedNotice] = field(default_factory=lambda: Channel("connected"))
    disconnected: Channel[DisconnectedNotice] = field(
        default_factory=lambda: Channel("disconnected")
    )
    sync: Channel[SyncNotice] = field(default_factory=lambda: Channel("sync"))
    update: Channel[UpdateNotice] = field(default_factory=lambda: Channel("update"))
    awareness: Channel[AwarenessNotice] = field(default_factory=lambda: Channel("awareness"))
    error: Channel[ErrorNotice] = field(default_factory=lambda: Channel("error"))
    metrics: Channel[SyncMetrics] = field(default_factory=lambda: Channel("metrics"))
    pong: Channel[PongNotice] = field(default_factory=lambda: Channel("pong"))
    relay_status: Channel[RelayStatusNotice] = field(
        default_factory=lambda: Channel("relay_status")
    )

    def channels(self) -> list[Channel]:
        return [
            self.connected,
            self.disconnected,
            self.sync,
            self.update,
            self.awareness,
            self.error,
            self.metrics,
            self.pong,
            self.relay_status,
        ]

    def clear(self) -> None:
        """Drop every registered listener."""
        for channel in self.channels():
            channel.clear()
