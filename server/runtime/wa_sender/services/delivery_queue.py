"""
WA Sender Runtime - Delivery Queue

Sequential, retrying dispatcher of outbound messages. A single drain loop
sends the head of the queue, in submission order, over the one transport
channel. While the session is not active the loop waits; nothing is
dropped or advanced.
"""

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from wa_sender.errors import ExhaustedRetriesError
from wa_sender.events import EventChannel
from wa_sender.models.message import OutboundMessage
from wa_sender.services.state_machine import ConnectionState, ConnectionStateMachine
from wa_sender.services.transport import TransportSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageDelivered:
    message: OutboundMessage
    address: str


@dataclass(frozen=True)
class MessageDropped:
    message: OutboundMessage
    error: ExhaustedRetriesError


class DeliveryQueue:
    """
    FIFO of OutboundMessage drained by exactly one loop at a time.

    enqueue() may be called from any number of request handlers; the
    in-progress flag is checked and set without an await in between, so a
    second drain() while one is running returns immediately.
    """

    def __init__(
        self,
        transport: TransportSession,
        machine: ConnectionStateMachine,
        *,
        pause_interval: float = 10.0,
        retry_backoff: float = 5.0,
    ):
        self.transport = transport
        self.machine = machine
        self.pause_interval = pause_interval
        self.retry_backoff = retry_backoff
        self.events = EventChannel("delivery")
        self.delivered = 0
        self.dropped = 0
        self._items: Deque[OutboundMessage] = deque()
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self._active = asyncio.Event()
        self._watch_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._draining

    def pending(self) -> List[OutboundMessage]:
        return list(self._items)

    def attach(self) -> None:
        """Follow the state machine's events so draining resumes once active"""
        if self._watch_task is not None and not self._watch_task.done():
            return
        events = self.machine.events.subscribe()
        self._watch_task = asyncio.create_task(self._follow_state(events), name="delivery-watch")

    async def detach(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _follow_state(self, events: asyncio.Queue) -> None:
        try:
            while True:
                event = await events.get()
                if event.current is ConnectionState.ACTIVE:
                    self._active.set()
                    self._kick()
        finally:
            self.machine.events.unsubscribe(events)

    def enqueue(self, message: OutboundMessage) -> None:
        self._items.append(message)
        logger.debug(f"Queued message to {message.target_id} ({len(self._items)} pending)")
        if self.machine.state is ConnectionState.ACTIVE:
            self._kick()

    def _kick(self) -> None:
        """Start a drain loop in the background unless one is running"""
        if self._draining or not self._items:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self.drain(), name="delivery-drain")

    async def drain(self) -> None:
        """Process the queue until it is empty"""
        if self._draining:
            logger.debug("Drain loop already running")
            return
        self._draining = True
        # clear() cancels whichever task runs the loop, kicked or called directly
        current = asyncio.current_task()
        self._drain_task = current
        try:
            while self._items:
                try:
                    await self._step()
                except Exception as e:
                    logger.exception(f"Unexpected error in delivery loop: {e}")
                    if self._items:
                        self._record_failure(self._items[0], e)
                    await asyncio.sleep(self.retry_backoff)
        finally:
            self._draining = False
            if self._drain_task is current:
                self._drain_task = None

    async def _step(self) -> None:
        if self.machine.state is not ConnectionState.ACTIVE:
            logger.info("Not connected, waiting before processing queue...")
            self._active.clear()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._active.wait(), self.pause_interval)
            return

        message = self._items[0]
        if message.attempts_made >= message.max_retries:
            self._drop(message, "max retries reached")
            return

        address = message.address
        logger.info(
            f"Sending message to {address}, attempt {message.attempts_made + 1}/{message.max_retries}"
        )
        try:
            await self.transport.send_text(address, message.body)
        except Exception as e:
            logger.error(f"Error sending message to {address}: {e}")
            self._record_failure(message, e)
            await asyncio.sleep(self.retry_backoff)
            return

        logger.info(f"Message sent successfully to {address}")
        self._pop(message)
        self.delivered += 1
        self.events.publish(MessageDelivered(message, address))

        if self._items and message.delay_after_seconds > 0:
            logger.info(f"Waiting {message.delay_after_seconds} seconds before next message")
            await asyncio.sleep(message.delay_after_seconds)

    def _record_failure(self, message: OutboundMessage, error: Exception) -> None:
        message.attempts_made += 1
        if not message.retry_enabled:
            self._drop(message, f"retry disabled: {error}")
        elif message.attempts_made >= message.max_retries:
            self._drop(message, str(error))

    def _drop(self, message: OutboundMessage, reason: str) -> None:
        error = ExhaustedRetriesError(message.target_id, message.attempts_made, reason)
        logger.warning(str(error))
        self._pop(message)
        self.dropped += 1
        self.events.publish(MessageDropped(message, error))

    def _pop(self, message: OutboundMessage) -> None:
        # clear() may have emptied the queue while a send was in flight
        if self._items and self._items[0] is message:
            self._items.popleft()

    async def clear(self) -> None:
        """Cancel the drain loop, interrupting any sleep, and discard everything queued"""
        task, self._drain_task = self._drain_task, None
        self._items.clear()
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._draining = False
        logger.info("Delivery queue cleared")
