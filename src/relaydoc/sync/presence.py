"""Ephemeral presence (awareness) tracking for remote participants."""

from __future__ import annotations

import time
from dataclasses import dataclass

from relaydoc.core.envelope import Cursor, PresenceContent


@dataclass(frozen=True)
class Participant:
    identity: str
    color: str
    display_name: str | None = None
    cursor: Cursor | None = None
    last_seen_at: float = 0.0

    def as_dict(self) -> dict:
        return {
            "pubkey": self.identity,
            "name": self.display_name,
            "color": self.color,
            "cursor": (
                {"anchor": self.cursor.anchor, "head": self.cursor.head} if self.cursor else None
            ),
            "lastSeen": self.last_seen_at,
        }


def generate_color(seed: str) -> str:
    """Derive a stable HSL color from *seed* (usually a public key).

    Uses the same 32-bit string hash as the browser editor so every peer
    paints a participant in the same color.
    """
    h = 0
    for ch in seed:
        shifted = _to_int32(_to_int32(h) << 5)
        h = ord(ch) + (shifted - h)
    hue = abs(h) % 360
    return f"hsl({hue}, 70%, 50%)"


def _to_int32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


class PresenceTracker:
    """Map of identity -> :class:`Participant`, last write wins.

    Entries keep their first-insertion position when updated.  With a
    ``ttl_seconds`` set, entries whose ``last_seen_at`` is older than the
    TTL are evicted lazily on ``ingest()`` and ``snapshot()``.
    """

    def __init__(self, ttl_seconds: float | None = 60.0) -> None:
        self.ttl_seconds = ttl_seconds
        self._participants: dict[str, Participant] = {}

    def ingest(
        self,
        identity: str,
        presence: PresenceContent,
        received_at: float | None = None,
    ) -> Participant:
        """Upsert the participant for *identity* and return it.

        *received_at* is the local receipt time.  Eviction always runs
        against the local clock, never against a sender-supplied time.
        """
        if received_at is None:
            received_at = time.time()
        participant = Participant(
            identity=identity,
            color=presence.color or generate_color(identity),
            display_name=presence.name,
            cursor=presence.cursor,
            last_seen_at=received_at,
        )
        self.expire()
        self._participants[identity] = participant
        return participant

    def remove(self, identity: str) -> bool:
        return self._participants.pop(identity, None) is not None

    def expire(self, now: float | None = None) -> list[str]:
        """Evict entries older than the TTL.  Returns the evicted identities."""
        if self.ttl_seconds is None:
            return []
        if now is None:
            now = time.time()
        cutoff = now - self.ttl_seconds
        stale = [i for i, p in self._participants.items() if p.last_seen_at < cutoff]
        for identity in stale:
            del self._participants[identity]
        return stale

    def snapshot(self, now: float | None = None) -> list[Participant]:
        """Current participants in insertion order."""
        self.expire(now)
        return list(self._participants.values())

    def clear(self) -> None:
        self._participants.clear()

    def __contains__(self, identity: object) -> bool:
        return identity in self._participants

    def __len__(self) -> int:
        return len(self._participants)
