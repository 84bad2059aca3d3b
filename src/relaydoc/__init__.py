"""relaydoc: CRDT document sync over Nostr relays."""

__version__ = "0.1.0"
