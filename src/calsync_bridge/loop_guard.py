"""Prevents remote-to-local writes from echoing back to the remote calendar.

The sync engine writes with ``sync_origin=True``. The store hands that flag to
its change listeners together with the row, and :class:`LocalChangeTrigger`
only forwards changes the application made itself. A pushed insert stores the
new remote id with ``sync_origin=True``, so the row never qualifies again.
"""

import asyncio
import logging
from typing import List, Optional

from .background import BackgroundTasks
from .models import ChangeKind, LocalChange
from .push import PushService

logger = logging.getLogger(__name__)


def should_push(change: LocalChange) -> bool:
    """Whether a local change has to be forwarded to the remote calendar."""
    if change.sync_origin:
        return False
    if change.kind in (ChangeKind.CREATED, ChangeKind.UPDATED) and change.event.external_id is None:
        return True
    # Edits and deletions of already-pushed rows are mirrored as well
    return change.kind in (ChangeKind.UPDATED, ChangeKind.DELETED) and change.event.external_id is not None


class LocalChangeTrigger:
    """Store change listener that queues qualifying changes for the push path.

    Args:
        push: Push service applying changes remotely
        background: Where flushes run when a loop is active; None disables
            automatic flushing so callers drive :meth:`flush` themselves
    """

    def __init__(self, push: PushService, background: Optional[BackgroundTasks] = None):
        self.push = push
        self.background = background
        self._pending: List[LocalChange] = []
        self._flushing = False

    def __call__(self, change: LocalChange) -> None:
        if not should_push(change):
            return
        self._pending.append(change)
        if self.background is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop (e.g. a CLI write); the next flush picks it up
            return
        self.background.spawn(self.flush(), f"push {change.kind.value} of event {change.event.id}")

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def flush(self) -> int:
        """Push queued changes in order; returns how many were dispatched."""
        if self._flushing:
            return 0
        self._flushing = True
        dispatched = 0
        try:
            while self._pending:
                change = self._pending.pop(0)
                try:
                    await self._dispatch(change)
                    dispatched += 1
                except Exception as e:
                    logger.error(f"Failed to push {change.kind.value} of event {change.event.id}: {e}")
        finally:
            self._flushing = False
        return dispatched

    async def _dispatch(self, change: LocalChange) -> None:
        if change.kind == ChangeKind.DELETED:
            await self.push.push_delete(change.event)
        elif change.event.external_id is None:
            await self.push.push_create(change.event)
        else:
            await self.push.push_update(change.event)
