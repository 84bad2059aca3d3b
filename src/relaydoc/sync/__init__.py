"""Room synchronization over Nostr relays.

The automerge document adapter lives in ``relaydoc.sync.automerge_doc``
and the nostr-sdk transport in ``relaydoc.nostr``; neither is imported here.
"""

from __future__ import annotations

from relaydoc.sync.bus import SyncEvents
from relaydoc.sync.document import ChangeEvent, CrdtDocument, DocumentBinding, ExportMode
from relaydoc.sync.engine import EngineState, SyncEngine
from relaydoc.sync.presence import Participant, PresenceTracker, generate_color
from relaydoc.sync.relays import PublishOutcome, RelayPool, RelaySessionManager, Signer

__all__ = [
    "ChangeEvent",
    "CrdtDocument",
    "DocumentBinding",
    "EngineState",
    "ExportMode",
    "Participant",
    "PresenceTracker",
    "PublishOutcome",
    "RelayPool",
    "RelaySessionManager",
    "Signer",
    "SyncEngine",
    "SyncEvents",
    "generate_color",
]
