"""Persistent local profile: signing keys, relay list, user name, recent documents.

Stored as ``profile.json`` in the profile directory.  Every mutation is a
locked read-modify-write followed by an atomic write.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypedDict

from relaydoc.core.config import DEFAULT_RELAYS
from relaydoc.storage.fs import atomic_write, profile_home
from relaydoc.storage.locks import profile_lock

logger = logging.getLogger(__name__)

PROFILE_FILE = "profile.json"
PROFILE_SCHEMA_VERSION = 1
MAX_RECENT_DOCUMENTS = 20


class StoredKeys(TypedDict):
    private_key: str
    public_key: str


class RelayEntry(TypedDict, total=False):
    url: str
    status: str
    last_connected: int


class RecentDocument(TypedDict):
    id: str
    title: str
    last_opened: int


class Profile(TypedDict, total=False):
    schema_version: int
    keys: StoredKeys | None
    relays: list[RelayEntry]
    user_name: str
    documents: list[RecentDocument]


def default_profile() -> Profile:
    return {
        "schema_version": PROFILE_SCHEMA_VERSION,
        "keys": None,
        "relays": [{"url": url, "status": "disconnected"} for url in DEFAULT_RELAYS],
        "user_name": "",
        "documents": [],
    }


def serialize_profile(profile: Profile) -> str:
    return json.dumps(profile, sort_keys=True, indent=2) + "\n"


class ProfileStore:
    """Read and update the profile under ``home`` (see ``profile_home()``)."""

    def __init__(self, home: Path | None = None) -> None:
        self.home = profile_home(home)
        self.path = self.home / PROFILE_FILE

    # -- raw access ----------------------------------------------------------

    def load(self) -> Profile:
        """Return the stored profile, or defaults if none exists or it is unreadable."""
        if not self.path.exists():
            return default_profile()
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("profile %s is unreadable, using defaults: %s", self.path, exc)
            return default_profile()
        if not isinstance(data, dict):
            return default_profile()
        profile = default_profile()
        profile.update(data)  # type: ignore[typeddict-item]
        return profile

    def save(self, profile: Profile) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        atomic_write(self.path, serialize_profile(profile))

    @contextmanager
    def _update(self) -> Iterator[Profile]:
        with profile_lock(self.home):
            profile = self.load()
            yield profile
            self.save(profile)

    # -- keys ----------------------------------------------------------------

    def keys(self) -> StoredKeys | None:
        return self.load().get("keys")

    def generate_keys(self) -> StoredKeys:
        from relaydoc.nostr import generate_keypair

        return self._store_keypair(generate_keypair)

    def import_keys(self, secret: str) -> StoredKeys:
        """Store a hex or ``nsec`` secret.

        Raises:
            KeyFormatError: If *secret* is not a valid key.
        """
        from relaydoc.nostr import import_keypair

        return self._store_keypair(lambda: import_keypair(secret))

    def _store_keypair(self, make: Callable) -> StoredKeys:
        pair = make()
        stored: StoredKeys = {"private_key": pair.secret_hex, "public_key": pair.public_hex}
        with self._update() as profile:
            profile["keys"] = stored
        return stored

    def clear_keys(self) -> None:
        with self._update() as profile:
            profile["keys"] = None

    # -- user name -----------------------------------------------------------

    def user_name(self) -> str:
        return self.load().get("user_name", "")

    def set_user_name(self, name: str) -> None:
        with self._update() as profile:
            profile["user_name"] = name.strip()

    # -- relays --------------------------------------------------------------

    def relays(self) -> list[RelayEntry]:
        return list(self.load().get("relays", []))

    def relay_urls(self) -> list[str]:
        return [r["url"] for r in self.relays()]

    def add_relay(self, url: str) -> bool:
        """Add *url* unless present.  Returns ``True`` if it was added."""
        url = url.strip()
        if not url.startswith(("ws://", "wss://")):
            raise ValueError(f"Relay URL must start with ws:// or wss://: {url!r}")
        with self._update() as profile:
            relays = profile.setdefault("relays", [])
            if any(r["url"] == url for r in relays):
                return False
            relays.append({"url": url, "status": "disconnected"})
        return True

    def remove_relay(self, url: str) -> bool:
        with self._update() as profile:
            relays = profile.get("relays", [])
            kept = [r for r in relays if r["url"] != url]
            profile["relays"] = kept
        return len(kept) != len(relays)

    def update_relay_status(self, url: str, status: str) -> None:
        """Record a status reported by a running engine."""
        with self._update() as profile:
            for relay in profile.get("relays", []):
                if relay["url"] == url:
                    relay["status"] = status
                    if status == "connected":
                        relay["last_connected"] = int(time.time() * 1000)

    # -- recent documents ----------------------------------------------------

    def documents(self) -> list[RecentDocument]:
        return list(self.load().get("documents", []))

    def add_document(self, doc_id: str, title: str | None = None) -> list[RecentDocument]:
        """Move *doc_id* to the front of the recent list, keeping at most 20."""
        with self._update() as profile:
            existing = profile.get("documents", [])
            if title is None:
                title = next((d["title"] for d in existing if d["id"] == doc_id), doc_id)
            entry: RecentDocument = {
                "id": doc_id,
                "title": title,
                "last_opened": int(time.time() * 1000),
            }
            documents = [entry] + [d for d in existing if d["id"] != doc_id]
            profile["documents"] = documents[:MAX_RECENT_DOCUMENTS]
            return list(profile["documents"])

    def remove_document(self, doc_id: str) -> bool:
        with self._update() as profile:
            documents = profile.get("documents", [])
            kept = [d for d in documents if d["id"] != doc_id]
            profile["documents"] = kept
        return len(kept) != len(documents)
