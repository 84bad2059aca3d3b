"""Tests for debounced update publishing."""

from __future__ import annotations

import asyncio

from fakes import FakeDocument

from relaydoc.sync.batcher import UpdateBatcher
from relaydoc.sync.document import DocumentBinding


def _setup(interval: float = 0.05):
    doc = FakeDocument()
    binding = DocumentBinding("doc_1", doc)
    published: list[bytes] = []

    async def publish(delta: bytes) -> None:
        published.append(delta)

    batcher = UpdateBatcher(binding.export_delta, publish, interval=interval)
    return doc, binding, batcher, published


class TestCoalescing:
    def test_burst_publishes_once(self) -> None:
        async def scenario():
            doc, _binding, batcher, published = _setup()
            for op in (b"a", b"b", b"c"):
                doc.edit(op)
                batcher.enqueue(op)
            assert batcher.pending_count == 3
            await asyncio.sleep(0.2)
            await batcher.drain()
            return published, batcher

        published, batcher = asyncio.run(scenario())
        assert published == [b"a|b|c"]
        assert batcher.pending_count == 0
        assert not batcher.armed

    def test_spaced_edits_publish_separately(self) -> None:
        async def scenario():
            doc, _binding, batcher, published = _setup(interval=0.03)
            doc.edit(b"a")
            batcher.enqueue(b"a")
            await asyncio.sleep(0.15)
            doc.edit(b"b")
            batcher.enqueue(b"b")
            await asyncio.sleep(0.15)
            doc.edit(b"c")
            batcher.enqueue(b"c")
            await asyncio.sleep(0.15)
            await batcher.drain()
            return published

        assert asyncio.run(scenario()) == [b"a", b"b", b"c"]

    def test_timer_not_rearmed_while_armed(self) -> None:
        async def scenario():
            _doc, _binding, batcher, _published = _setup(interval=10)
            batcher.enqueue(b"a")
            timer = batcher._timer
            batcher.enqueue(b"b")
            same = batcher._timer is timer
            batcher.cancel()
            return same

        assert asyncio.run(scenario()) is True


class TestFlush:
    def test_flush_now(self) -> None:
        async def scenario():
            doc, _binding, batcher, published = _setup(interval=10)
            doc.edit(b"a")
            batcher.enqueue(b"a")
            delta = await batcher.flush()
            return delta, published, batcher.armed

        delta, published, armed = asyncio.run(scenario())
        assert delta == b"a"
        assert published == [b"a"]
        assert armed is False

    def test_flush_with_nothing_pending(self) -> None:
        _doc, _binding, batcher, published = _setup()
        assert asyncio.run(batcher.flush()) is None
        assert published == []

    def test_empty_delta_not_published(self) -> None:
        async def scenario():
            doc, binding, batcher, published = _setup(interval=10)
            doc.edit(b"a")
            batcher.enqueue(b"a")
            await batcher.flush()
            batcher.enqueue(b"")
            empty = await batcher.flush()
            marker = binding.last_exported_version
            doc.edit(b"b")
            batcher.enqueue(b"b")
            await batcher.flush()
            return empty, marker, published

        empty, marker, published = asyncio.run(scenario())
        assert empty is None
        # The marker advances on an empty export too.
        assert marker == 1
        assert published == [b"a", b"b"]

    def test_only_changes_since_last_export(self) -> None:
        async def scenario():
            doc, _binding, batcher, published = _setup(interval=10)
            doc.edit(b"a")
            batcher.enqueue(b"a")
            await batcher.flush()
            doc.edit(b"b")
            batcher.enqueue(b"b")
            await batcher.flush()
            return published

        assert asyncio.run(scenario()) == [b"a", b"b"]

    def test_enqueue_without_loop_defers(self) -> None:
        _doc, _binding, batcher, _published = _setup()
        batcher.enqueue(b"a")
        assert batcher.pending_count == 1
        assert not batcher.armed
