"""In-process async event bus feeding the UI event streams.

Channels follow the pattern:
- ``session:{id}`` for events of one agent session
- ``global`` for every session's events (subscribers filter by ``session_id``)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"
DEFAULT_QUEUE_SIZE = 1000


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"


class EventBus:
    """Pub/sub event bus using asyncio.Queue per subscriber.

    Thread-safety: all operations run within the asyncio event loop.
    The bus supports N concurrent subscribers per channel. A subscriber that
    falls behind by more than its queue size loses events rather than
    blocking the publisher.
    """

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._max_queue_size = max_queue_size

    def subscribe(self, channel: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue_size)
        if channel not in self._subscribers:
            self._subscribers[channel] = set()
        self._subscribers[channel].add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        subs = self._subscribers.get(channel)
        if subs:
            subs.discard(queue)
            if not subs:
                del self._subscribers[channel]

    async def publish(self, channel: str, event: dict[str, Any]) -> None:
        subs = self._subscribers.get(channel)
        if subs:
            for queue in list(subs):
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.warning("Event bus: queue full on channel %s, dropping event", channel)

    async def publish_session_event(self, session_id: str, name: str, data: dict[str, Any] | None = None) -> None:
        """Publish a named UI event on the session's channel and the global channel."""
        event = {"type": name, "data": {"session_id": session_id, **(data or {})}}
        await self.publish(session_channel(session_id), event)
        await self.publish(GLOBAL_CHANNEL, event)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, set()))
