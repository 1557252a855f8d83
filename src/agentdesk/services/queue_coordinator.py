"""Queue policy: when a finished turn pulls the next queued message, and snapshot upkeep."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from ..db import ThreadSafeConnection
from . import queue_store, storage
from .event_bus import EventBus
from .turn_state import SessionBusyError, TurnOutcome

if TYPE_CHECKING:
    from .agent_sessions import AgentSession

logger = logging.getLogger(__name__)


class QueueCoordinator:
    """Owns every queue mutation for the running sessions.

    Mutations and auto-dispatch for one session are serialized by a per-session
    lock. Each mutation and the rewrite of the ``queued_messages`` snapshot on the
    conversation row commit in one transaction; a ``queue`` event is published
    once it has committed.
    """

    def __init__(self, db: ThreadSafeConnection, event_bus: EventBus | None = None) -> None:
        self._db = db
        self._event_bus = event_bus
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def forget(self, session_id: str) -> None:
        self._locks.pop(session_id, None)

    # --- reads ---

    def list_items(self, session_id: str) -> list[dict[str, Any]]:
        return queue_store.list_queue(self._db, session_id)

    def count(self, session_id: str) -> int:
        return queue_store.count_queue(self._db, session_id)

    def search(self, session_id: str, keyword: str) -> list[dict[str, Any]]:
        return queue_store.search_queue(self._db, session_id, keyword)

    # --- mutations ---

    async def enqueue(self, session_id: str, content: str) -> dict[str, Any]:
        async with self._lock(session_id):
            with self._db.transaction():
                item = queue_store.enqueue(self._db, session_id, content)
                items = self._snapshot(session_id)
            await self._publish(session_id, items)
        logger.info("Queued message %s for session %s", item["id"], session_id)
        return item

    async def update(self, session_id: str, item_id: str, content: str) -> int:
        async with self._lock(session_id):
            with self._db.transaction():
                changed = queue_store.update_item(self._db, session_id, item_id, content)
                items = self._snapshot(session_id) if changed else None
            if items is not None:
                await self._publish(session_id, items)
        return changed

    async def delete(self, session_id: str, item_id: str) -> int:
        async with self._lock(session_id):
            with self._db.transaction():
                removed = queue_store.delete_item(self._db, session_id, item_id)
                items = self._snapshot(session_id) if removed else None
            if items is not None:
                await self._publish(session_id, items)
        return removed

    async def swap(self, session_id: str, id1: str, id2: str) -> bool:
        async with self._lock(session_id):
            with self._db.transaction():
                swapped = queue_store.swap_order(self._db, session_id, id1, id2)
                items = self._snapshot(session_id) if swapped else None
            if items is not None:
                await self._publish(session_id, items)
        return swapped

    async def mark_executed(self, session_id: str, item_id: str) -> int:
        async with self._lock(session_id):
            with self._db.transaction():
                changed = queue_store.mark_executed(self._db, session_id, item_id)
                items = self._snapshot(session_id) if changed else None
            if items is not None:
                await self._publish(session_id, items)
        return changed

    async def clear(self, session_id: str) -> int:
        async with self._lock(session_id):
            with self._db.transaction():
                cleared = queue_store.clear_queue(self._db, session_id)
                items = self._snapshot(session_id)
            await self._publish(session_id, items)
        return cleared

    async def refresh_snapshot(self, session_id: str) -> list[dict[str, Any]]:
        """Rebuild the snapshot from the queue table, e.g. after a restart."""
        async with self._lock(session_id):
            with self._db.transaction():
                items = self._snapshot(session_id)
            await self._publish(session_id, items)
        return items

    # --- dispatch policy ---

    async def on_turn_finished(self, session: AgentSession, outcome: TurnOutcome) -> dict[str, Any] | None:
        """Called once per finished turn. Sends the queue head only after a natural completion."""
        if outcome.interrupted:
            pending = self.count(session.id)
            if pending:
                logger.info("Session %s interrupted; holding %d queued message(s)", session.id, pending)
            return None
        if outcome.error:
            logger.info("Session %s turn failed; queue left untouched", session.id)
            return None
        return await self.dispatch_next(session)

    async def dispatch_next(self, session: AgentSession) -> dict[str, Any] | None:
        """Send the head of the queue as a new turn.

        The head is removed before the send, so a message can never be sent and
        still sit at the front. If the send fails the item is put back in place.
        """
        async with self._lock(session.id):
            with self._db.transaction():
                head = queue_store.peek(self._db, session.id)
                if head is None:
                    return None
                queue_store.delete_item(self._db, session.id, head["id"])
                items = self._snapshot(session.id)
            try:
                await session.send(head["content"])
            except SessionBusyError as e:
                self._restore(head)
                logger.warning("Auto-dispatch for session %s deferred: %s", session.id, e)
                return None
            except Exception:
                self._restore(head)
                raise
            await self._publish(session.id, items)
        logger.info("Dispatched queued message %s for session %s", head["id"], session.id)
        return head

    def _restore(self, item: dict[str, Any]) -> None:
        with self._db.transaction():
            queue_store.restore_item(self._db, item)
            self._snapshot(item["session_uuid"])

    def _snapshot(self, session_id: str) -> list[dict[str, Any]]:
        items = queue_store.list_queue(self._db, session_id)
        storage.save_queue_snapshot(self._db, session_id, items)
        return items

    async def _publish(self, session_id: str, items: list[dict[str, Any]]) -> None:
        if self._event_bus:
            await self._event_bus.publish_session_event(session_id, "queue", {"items": items})
