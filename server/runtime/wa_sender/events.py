"""
WA Sender Runtime - Event Channel

Fan-out notification channel. Each subscriber gets its own asyncio.Queue
and sees every event published after it subscribed.
"""

import asyncio
import logging
from typing import Any, List

logger = logging.getLogger(__name__)


class EventChannel:
    """In-process publish/subscribe channel"""

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    def publish(self, event: Any) -> None:
        """Deliver an event to every subscriber without blocking"""
        logger.debug(f"[{self.name}] {event!r}")
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
