"""Sync engine options and their validation."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_RELAYS: tuple[str, ...] = (
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://nostr-pub.wellorder.net/",
)

DEFAULT_BATCH_INTERVAL_MS = 100
DEFAULT_HISTORY_LIMIT = 100
DEFAULT_PRESENCE_WINDOW_S = 60


class SyncOptions(BaseModel):
    """Options for one :class:`~relaydoc.sync.engine.SyncEngine`.

    ``private_key`` accepts a 64-char hex secret or an ``nsec`` string;
    a fresh key is generated when it is omitted.
    """

    model_config = ConfigDict(frozen=True)

    room_id: str = Field(min_length=1, description="Document ID, used as the room tag")
    relays: tuple[str, ...] = Field(min_length=1, description="Relay websocket URLs")
    private_key: str | None = Field(default=None, description="Signing key (hex or nsec)")
    batch_interval_ms: int = Field(default=DEFAULT_BATCH_INTERVAL_MS, gt=0)
    sync_on_connect: bool = True
    history_limit: int = Field(default=DEFAULT_HISTORY_LIMIT, ge=1, le=5000)
    presence_window_s: int = Field(default=DEFAULT_PRESENCE_WINDOW_S, ge=1)
    presence_ttl_s: float | None = Field(default=60.0, gt=0)
    query_timeout_s: float = Field(default=10.0, gt=0)
    latency_samples: int = Field(default=100, ge=1)
    probe_timeout_s: float = Field(default=10.0, gt=0)

    @field_validator("room_id", mode="after")
    @classmethod
    def validate_room_id(cls, v: str) -> str:
        if v.strip() != v:
            raise ValueError("room_id must not have leading or trailing whitespace")
        return v

    @field_validator("relays", mode="after")
    @classmethod
    def validate_relays(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Require websocket URLs and drop duplicates, keeping first-seen order."""
        seen: list[str] = []
        for url in v:
            url = url.strip()
            if not url.startswith(("ws://", "wss://")):
                raise ValueError(f"Relay URL must start with ws:// or wss://: {url!r}")
            if url not in seen:
                seen.append(url)
        return tuple(seen)

    @property
    def batch_interval(self) -> float:
        """Batch window in seconds."""
        return self.batch_interval_ms / 1000.0
