"""Debounced publishing of local document changes.

Enqueued updates only arm the timer; the published payload is always the
document's delta since the last export, so a burst of edits inside one
window turns into a single minimal update.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class UpdateBatcher:
    """Coalesce local updates into at most one publish per ``interval`` seconds."""

    def __init__(
        self,
        export_delta: Callable[[], bytes],
        publish: Callable[[bytes], Awaitable[object]],
        interval: float = 0.1,
    ) -> None:
        self.interval = interval
        self._export_delta = export_delta
        self._publish = publish
        self._pending: list[bytes] = []
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def enqueue(self, update: bytes) -> None:
        """Record a local update and arm the timer if it is not armed yet."""
        self._pending.append(update)
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: the update stays pending until the next flush.
            logger.debug("no running loop; deferring %d pending updates", len(self._pending))
            return
        self._timer = loop.call_later(self.interval, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self._flush_logged())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _flush_logged(self) -> None:
        try:
            await self.flush()
        except Exception:
            logger.exception("flushing batched updates failed")

    async def flush(self) -> bytes | None:
        """Publish the delta since the last export, if anything is pending.

        Returns the published delta, or ``None`` when nothing was sent.
        """
        self.cancel()
        if not self._pending:
            return None

        delta = self._export_delta()
        self._pending.clear()
        if not delta:
            logger.debug("batch produced an empty delta; nothing to publish")
            return None

        await self._publish(delta)
        return delta

    def cancel(self) -> None:
        """Disarm the timer without flushing."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def drain(self) -> None:
        """Wait for timer-triggered flushes that are already running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
