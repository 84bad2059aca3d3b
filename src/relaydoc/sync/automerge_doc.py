"""Automerge-backed implementation of the CRDT document interface.

String fields are collaborative Text and the text helpers splice into
the existing Text object, so concurrent inserts from different peers
both survive a merge.  The version marker is the tuple of change-hash
heads.

An "update" export is the raw changes made after the marker heads.  A
snapshot is the compacted ``save()`` output.  Both are imported the same
way: the bytes are loaded behind this document's own saved history, so
changes find their dependencies, and the result is merged back.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Generator, Hashable

from automerge import Document, core

from relaydoc.core.errors import ImportRejected
from relaydoc.sync.document import ORIGIN_IMPORT, ORIGIN_LOCAL, ChangeEvent, ExportMode

logger = logging.getLogger(__name__)

DEFAULT_TEXT_FIELD = "content"


class AutomergeDocument:
    """Wrap an ``automerge.Document`` and report every commit with its origin."""

    def __init__(self, doc: Document | None = None) -> None:
        self._doc = doc if doc is not None else Document()
        self._listeners: list[Callable[[ChangeEvent], None]] = []

    @classmethod
    def load(cls, data: bytes) -> AutomergeDocument:
        """Create a document from saved bytes."""
        return cls(_wrap_core_doc(core.Document.load(data)))

    # -- CrdtDocument --------------------------------------------------------

    def import_bytes(self, data: bytes) -> None:
        try:
            remote = core.Document.load(bytes(self._doc._doc.save()) + bytes(data))
        except Exception as exc:
            raise ImportRejected(f"Not automerge data: {exc}") from exc

        before = self.version()
        self._doc._doc.merge(remote)
        if self.version() != before:
            self._notify(ChangeEvent(origin=ORIGIN_IMPORT))
        else:
            logger.debug("import of %d bytes changed nothing", len(data))

    def export(self, mode: ExportMode, since: Hashable | None = None) -> bytes:
        if mode == ExportMode.SNAPSHOT or since is None:
            return bytes(self._doc._doc.save())
        if self.version() == since:
            return b""
        changes = self._doc._doc.get_changes(list(since))
        return b"".join(bytes(change.bytes) for change in changes)

    def version(self) -> tuple:
        return tuple(self._doc._doc.get_heads())

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    # -- local editing -------------------------------------------------------

    @contextlib.contextmanager
    def change(self) -> Generator:
        """Open a local change.  Listeners fire after the change commits."""
        with self._local_commit():
            with self._doc.change() as d:
                yield d

    @contextlib.contextmanager
    def _local_commit(self) -> Generator:
        before = self.version()
        yield
        if self.version() != before:
            self._notify(ChangeEvent(origin=ORIGIN_LOCAL))

    def get_text(self, field: str = DEFAULT_TEXT_FIELD) -> str:
        value = self.to_py().get(field)
        return str(value) if value is not None else ""

    def set_text(self, content: str, field: str = DEFAULT_TEXT_FIELD) -> None:
        """Replace *field* with a new Text object holding *content*."""
        with self.change() as d:
            d[field] = str(content)

    def insert_text(self, pos: int, content: str, field: str = DEFAULT_TEXT_FIELD) -> None:
        text_id = self._text_id(field)
        if text_id is None:
            self.set_text(content, field)
            return
        pos = max(0, min(pos, len(self.get_text(field))))
        self._splice(text_id, pos, 0, content)

    def delete_text(self, pos: int, length: int, field: str = DEFAULT_TEXT_FIELD) -> None:
        text_id = self._text_id(field)
        if text_id is None:
            return
        size = len(self.get_text(field))
        pos = max(0, pos)
        if length <= 0 or pos >= size:
            return
        self._splice(text_id, pos, min(length, size - pos), "")

    def _text_id(self, field: str):
        """Object id of the Text stored at *field*, or ``None``."""
        found = self._doc._doc.get(core.ROOT, field)
        if found is None:
            return None
        value, obj_id = found
        if value != core.ObjType.Text:
            return None
        return obj_id

    def _splice(self, text_id, pos: int, delete: int, content: str) -> None:
        with self._local_commit():
            with self._doc._doc.transaction() as tx:
                tx.splice_text(text_id, pos, delete, content)

    def to_py(self) -> dict:
        return self._doc.to_py()

    def _notify(self, event: ChangeEvent) -> None:
        for fn in list(self._listeners):
            fn(event)


def _wrap_core_doc(core_doc: core.Document) -> Document:
    """Wrap a core.Document in the high-level Document class."""
    doc = Document.__new__(Document)
    doc._doc = core_doc
    # Initialize the MapReadProxy base class
    from automerge.document import MapReadProxy

    MapReadProxy.__init__(doc, core_doc, core.ROOT, None)
    return doc
