"""The CRDT document interface the sync engine relies on, and its binding.

The engine never merges anything itself.  It needs a document that can
import opaque bytes, export a snapshot or a delta since a version marker,
report its current version, and tell it about every commit together with
the commit's origin so imported changes are not broadcast again.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

ORIGIN_LOCAL = "local"
ORIGIN_IMPORT = "import"


class ExportMode(str, Enum):
    SNAPSHOT = "snapshot"
    UPDATE = "update"


@dataclass(frozen=True)
class ChangeEvent:
    """Emitted by a document after every commit."""

    origin: str
    update: bytes = b""

    @property
    def is_local(self) -> bool:
        return self.origin != ORIGIN_IMPORT


class CrdtDocument(Protocol):
    def import_bytes(self, data: bytes) -> None:
        """Merge *data* (snapshot or update).  Idempotent and commutative."""
        ...

    def export(self, mode: ExportMode, since: Hashable | None = None) -> bytes:
        """Export a full snapshot, or the changes made after *since*."""
        ...

    def version(self) -> Hashable: ...

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Register *callback* for commits.  Returns an unsubscribe callable."""
        ...


class DocumentBinding:
    """One room's document plus the last exported version marker.

    Owned by exactly one engine.  The local-change hook is registered once
    in ``bind()`` and removed in ``release()``.
    """

    def __init__(self, room_id: str, document: CrdtDocument) -> None:
        self.room_id = room_id
        self.document = document
        self.last_exported_version: Hashable | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def bound(self) -> bool:
        return self._unsubscribe is not None

    def bind(self, on_local_change: Callable[[ChangeEvent], None]) -> None:
        if self._unsubscribe is not None:
            raise RuntimeError(f"Document for room {self.room_id!r} is already bound")

        def _hook(event: ChangeEvent) -> None:
            if event.is_local:
                on_local_change(event)

        self._unsubscribe = self.document.subscribe(_hook)

    def release(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def export_delta(self) -> bytes:
        """Export changes since the last marker and advance the marker.

        The marker advances even when the delta is empty.
        """
        if self.last_exported_version is None:
            delta = self.document.export(ExportMode.UPDATE)
        else:
            delta = self.document.export(ExportMode.UPDATE, since=self.last_exported_version)
        self.last_exported_version = self.document.version()
        return delta

    def export_snapshot(self) -> bytes:
        return self.document.export(ExportMode.SNAPSHOT)

    def apply_remote(self, data: bytes) -> None:
        self.document.import_bytes(data)
