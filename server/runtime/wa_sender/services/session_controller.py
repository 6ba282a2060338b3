"""
WA Sender Runtime - Session Controller

Facade the HTTP layer calls. Owns the one Session (transport, state
machine, delivery queue) and composes the credential store with it.
"""

import asyncio
import contextlib
import logging
from typing import Callable, List, Optional, Sequence

from wa_sender.config import Settings
from wa_sender.errors import InvalidStateError, StorageError, ValidationError
from wa_sender.models.message import OutboundMessage, SendRequest
from wa_sender.models.schemas import Ack, QueueStatus, StatusResponse
from wa_sender.services.credential_store import CredentialBundle, CredentialStore
from wa_sender.services.delivery_queue import DeliveryQueue
from wa_sender.services.state_machine import (
    ConnectionState,
    ConnectionStateMachine,
    normalize_phone_number,
)
from wa_sender.services.transport import CredentialsUpdated, TransportSession

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], TransportSession]


class Session:
    """The single live session: one transport, its state machine and queue"""

    def __init__(self, transport: TransportSession, settings: Settings):
        self.transport = transport
        self.machine = ConnectionStateMachine(
            transport,
            connect_timeout=settings.CONNECT_TIMEOUT_SECONDS,
            pairing_timeout=settings.PAIRING_TIMEOUT_SECONDS,
        )
        self.queue = DeliveryQueue(
            transport,
            self.machine,
            pause_interval=settings.QUEUE_PAUSE_SECONDS,
            retry_backoff=settings.RETRY_BACKOFF_SECONDS,
        )

    @property
    def state(self) -> ConnectionState:
        return self.machine.state

    @property
    def pairing_code(self) -> Optional[str]:
        return self.machine.pairing_code

    @property
    def scannable_challenge(self) -> Optional[bytes]:
        return self.machine.scannable_challenge


def build_messages(batch: Sequence[SendRequest]) -> List[OutboundMessage]:
    """Expand a batch into one message per body and target, validating everything first"""
    if not batch:
        raise ValidationError("No messages to send")

    messages = []
    for request in batch:
        targets = [t.strip() for t in request.targets if t and t.strip()]
        if not targets:
            raise ValidationError("At least one target is required")
        bodies = [b for b in request.bodies if b and b.strip()]
        if not bodies:
            raise ValidationError("Message content is required")
        if request.delay_after_seconds < 0:
            raise ValidationError("Message delay must not be negative")
        if request.max_retries < 0:
            raise ValidationError("Max retries must not be negative")

        for body in bodies:
            for target in targets:
                messages.append(
                    OutboundMessage(
                        target_id=target,
                        body=body,
                        target_kind=request.target_kind,
                        delay_after_seconds=request.delay_after_seconds,
                        retry_enabled=request.retry_enabled,
                        max_retries=request.max_retries,
                    )
                )
    return messages


class SessionController:
    """
    Entry point for start/stop/pairing/status.

    At most one Session exists per controller; it is created on first use
    and reused afterwards, so a transport handle is never orphaned.
    """

    def __init__(
        self,
        settings: Settings,
        transport_factory: TransportFactory,
        credential_store: CredentialStore,
    ):
        self.settings = settings
        self.transport_factory = transport_factory
        self.credential_store = credential_store
        self._session: Optional[Session] = None
        self._persist_task: Optional[asyncio.Task] = None
        self._start_lock = asyncio.Lock()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def _ensure_session(self) -> Session:
        if self._session is None:
            self._session = Session(self.transport_factory(), self.settings)
            self._session.queue.attach()
            events = self._session.transport.events.subscribe()
            self._persist_task = asyncio.create_task(
                self._persist_credentials(events), name="credential-persist"
            )
        return self._session

    async def _persist_credentials(self, events: asyncio.Queue) -> None:
        """Save every credential update; a failed save never tears the session down"""
        while True:
            event = await events.get()
            if not isinstance(event, CredentialsUpdated):
                continue
            try:
                self.credential_store.save(event.bundle)
            except StorageError as e:
                logger.error(f"Failed to persist credentials: {e.message} ({e.details})")

    def _load_credentials(self) -> Optional[CredentialBundle]:
        try:
            return self.credential_store.load()
        except StorageError as e:
            logger.warning(f"Could not load stored credentials, continuing without: {e.details}")
            return None

    async def start(
        self,
        batch: Sequence[SendRequest],
        credential_blob: Optional[bytes] = None,
    ) -> Ack:
        """
        Connect if needed and queue the batch for background delivery.

        Returns as soon as the messages are queued.
        """
        messages = build_messages(batch)

        async with self._start_lock:
            session = self._ensure_session()
            if credential_blob is not None:
                self.credential_store.import_external(credential_blob)

            if session.state not in (
                ConnectionState.ACTIVE,
                ConnectionState.CONNECTING,
                ConnectionState.PAIRING,
            ):
                await session.machine.connect(self._load_credentials())
                if session.state in (ConnectionState.CLOSING, ConnectionState.DISCONNECTED):
                    raise InvalidStateError("Session was stopped while connecting")

            for message in messages:
                session.queue.enqueue(message)

        logger.info(f"Queued {len(messages)} messages for delivery")
        return Ack(success=True, message="Started messaging session", queued=len(messages))

    async def request_pairing(self, phone_number: Optional[str]) -> str:
        """Pairing requires a connection already started with start()"""
        normalize_phone_number(phone_number)
        if self._session is None:
            raise InvalidStateError("Connection not in connecting state", details="Session not started")
        return await self._session.machine.request_pairing(phone_number)

    async def stop(self) -> Ack:
        """Discard queued messages and release the transport; safe to repeat"""
        session = self._session
        if session is not None:
            try:
                await session.queue.clear()
            finally:
                await session.machine.disconnect()
        logger.info("Messaging session stopped")
        return Ack(success=True, message="Messaging session stopped")

    def status(self) -> StatusResponse:
        session = self._session
        if session is None:
            return StatusResponse(state=ConnectionState.DISCONNECTED.value)
        challenge = session.scannable_challenge
        return StatusResponse(
            state=session.state.value,
            pairing_code=session.pairing_code,
            qr_code=challenge.decode("utf-8", errors="replace") if challenge else None,
        )

    def queue_status(self) -> QueueStatus:
        session = self._session
        if session is None:
            return QueueStatus(pending=0, delivered=0, dropped=0, draining=False)
        queue = session.queue
        return QueueStatus(
            pending=len(queue),
            delivered=queue.delivered,
            dropped=queue.dropped,
            draining=queue.draining,
        )

    async def shutdown(self) -> None:
        """Stop the session and cancel background tasks"""
        await self.stop()
        if self._session is not None:
            await self._session.queue.detach()
        task, self._persist_task = self._persist_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
