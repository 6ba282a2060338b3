"""
WA Sender Runtime - Connection State Machine

Authoritative lifecycle of the session:

    disconnected -> connecting -> (pairing ->) active
    active/connecting/pairing -> connecting      recoverable drop, reconnect
    active/connecting/pairing -> disconnected    logged out, no reconnect
    any -> closing -> disconnected               disconnect()
    any -> errored                               unrecoverable fault

A supervisor task consumes the transport's events and performs reconnects
as explicit transitions. Every transition is published as StateChanged on
`events`.
"""

import asyncio
import contextlib
import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional

from wa_sender.errors import InvalidStateError, TransportError, ValidationError
from wa_sender.events import EventChannel
from wa_sender.services.credential_store import CredentialBundle
from wa_sender.services.transport import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    DisconnectReason,
    PairingChallenge,
    TransportFault,
    TransportSession,
)

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^[0-9]{10,15}$")


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    PAIRING = "pairing"
    ACTIVE = "active"
    CLOSING = "closing"
    ERRORED = "errored"


_ALLOWED = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.CLOSING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTING,
        ConnectionState.PAIRING,
        ConnectionState.ACTIVE,
        ConnectionState.DISCONNECTED,
        ConnectionState.CLOSING,
        ConnectionState.ERRORED,
    },
    ConnectionState.PAIRING: {
        ConnectionState.CONNECTING,
        ConnectionState.ACTIVE,
        ConnectionState.DISCONNECTED,
        ConnectionState.CLOSING,
        ConnectionState.ERRORED,
    },
    ConnectionState.ACTIVE: {
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
        ConnectionState.CLOSING,
        ConnectionState.ERRORED,
    },
    ConnectionState.CLOSING: {ConnectionState.DISCONNECTED},
    ConnectionState.ERRORED: {ConnectionState.CONNECTING, ConnectionState.CLOSING},
}

_LIVE_STATES = (ConnectionState.CONNECTING, ConnectionState.PAIRING, ConnectionState.ACTIVE)


@dataclass(frozen=True)
class StateChanged:
    previous: ConnectionState
    current: ConnectionState
    reason: Optional[str] = None


def normalize_phone_number(phone_number: Optional[str]) -> str:
    """Strip everything but digits and require 10-15 of them"""
    digits = re.sub(r"\D", "", phone_number or "")
    if not PHONE_PATTERN.match(digits):
        raise ValidationError(
            "Invalid phone number format. Should be 10-15 digits.",
            details=f"Got {len(digits)} digits",
        )
    return digits


class ConnectionStateMachine:
    """Lifecycle and reconnection policy for one transport"""

    def __init__(
        self,
        transport: TransportSession,
        *,
        connect_timeout: float = 60.0,
        pairing_timeout: float = 60.0,
    ):
        self.transport = transport
        self.connect_timeout = connect_timeout
        self.pairing_timeout = pairing_timeout
        self.events = EventChannel("connection")
        self.pairing_code: Optional[str] = None
        self.scannable_challenge: Optional[bytes] = None
        self.last_error: Optional[str] = None
        self.reconnect_count = 0
        self._state = ConnectionState.DISCONNECTED
        self._credentials: Optional[CredentialBundle] = None
        self._supervisor: Optional[asyncio.Task] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _transition(self, new_state: ConnectionState, reason: Optional[str] = None) -> None:
        current = self._state
        if new_state not in _ALLOWED[current]:
            raise InvalidStateError(f"Invalid transition {current.value} -> {new_state.value}")
        self._state = new_state
        logger.info(f"Connection status: {current.value} -> {new_state.value}" + (f" ({reason})" if reason else ""))
        self.events.publish(StateChanged(current, new_state, reason))

    def _clear_pairing(self) -> None:
        self.pairing_code = None
        self.scannable_challenge = None

    async def connect(self, credentials: Optional[CredentialBundle] = None) -> None:
        """
        Open the connection and start the handshake.

        No-op while a connection is already live. Raises TransportError and
        moves to errored when the attempt fails or exceeds the connect
        timeout.
        """
        if self._state in _LIVE_STATES:
            logger.info(f"Connect ignored, session already {self._state.value}")
            return
        if self._state is ConnectionState.CLOSING:
            raise InvalidStateError("Session is closing")

        self._credentials = credentials
        self.last_error = None
        self.reconnect_count = 0
        self._transition(ConnectionState.CONNECTING, "connect requested")
        self._start_supervisor()

        try:
            await self._handshake()
        except TransportError as e:
            if self._state not in _LIVE_STATES:
                # disconnect() ran while the handshake was pending
                raise TransportError("Connection attempt aborted", details=e.details) from e
            await self._fail(e.message)
            raise

        if self._state not in _LIVE_STATES:
            # disconnect() ran while the handshake was pending; release what it opened
            await self._close_transport()
            raise TransportError("Connection attempt aborted")

    async def _handshake(self) -> None:
        try:
            await asyncio.wait_for(self.transport.connect(self._credentials), self.connect_timeout)
        except TransportError:
            raise
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connection attempt timed out after {self.connect_timeout:g}s") from e
        except Exception as e:
            raise TransportError(f"Connection attempt failed: {e}") from e

    async def request_pairing(self, phone_number: Optional[str]) -> str:
        """
        Request a pairing code for linking this session to a phone.

        Only allowed while connecting without valid credentials; the number
        is validated before any network call.
        """
        digits = normalize_phone_number(phone_number)

        if self._state is not ConnectionState.CONNECTING:
            raise InvalidStateError(
                "Connection not in connecting state",
                details=f"Current state is {self._state.value}",
            )
        if self.transport.has_valid_credentials:
            raise InvalidStateError("Session already has valid credentials")

        logger.info(f"Requesting pairing code for: {digits}")
        try:
            code = await asyncio.wait_for(
                self.transport.request_pairing_code(digits), self.pairing_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Pairing request timed out after {self.pairing_timeout:g}s") from e
        logger.info(f"Got pairing code: {code}")

        self.pairing_code = code
        if self._state is ConnectionState.CONNECTING:
            self._transition(ConnectionState.PAIRING, "pairing code issued")
        return code

    async def disconnect(self) -> None:
        """Tear down the transport; idempotent"""
        if self._state is ConnectionState.CLOSING:
            return
        if self._state is ConnectionState.DISCONNECTED and self._supervisor is None:
            return
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.CLOSING, "disconnect requested")

        supervisor, self._supervisor = self._supervisor, None
        try:
            if supervisor is not None:
                supervisor.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await supervisor
        finally:
            await self._close_transport()
            self._clear_pairing()
            if self._state is ConnectionState.CLOSING:
                self._transition(ConnectionState.DISCONNECTED, "disconnected")

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"Error closing transport: {e}")

    async def _fail(self, detail: str) -> None:
        self.last_error = detail
        logger.error(f"Unrecoverable transport fault: {detail}")
        self._clear_pairing()
        if ConnectionState.ERRORED in _ALLOWED[self._state]:
            self._transition(ConnectionState.ERRORED, detail)
        await self._close_transport()

    def _start_supervisor(self) -> None:
        if self._supervisor is not None and not self._supervisor.done():
            return
        # Subscribe before connect() so no early event is missed
        events = self.transport.events.subscribe()
        self._supervisor = asyncio.create_task(self._supervise(events), name="connection-supervisor")

    async def _supervise(self, events: asyncio.Queue) -> None:
        try:
            while True:
                event = await events.get()
                try:
                    await self._handle_event(event)
                except Exception as e:
                    logger.exception(f"Error handling transport event {event!r}: {e}")
        finally:
            self.transport.events.unsubscribe(events)

    async def _handle_event(self, event) -> None:
        if isinstance(event, CredentialsUpdated):
            self._credentials = event.bundle
        elif isinstance(event, PairingChallenge):
            if self._state in (ConnectionState.CONNECTING, ConnectionState.PAIRING):
                self.scannable_challenge = event.challenge
        elif isinstance(event, ConnectionOpened):
            if self._state in (ConnectionState.CONNECTING, ConnectionState.PAIRING):
                self._clear_pairing()
                self.reconnect_count = 0
                self._transition(ConnectionState.ACTIVE, "connected")
        elif isinstance(event, ConnectionClosed):
            await self._handle_close(event)
        elif isinstance(event, TransportFault):
            if self._state in _LIVE_STATES:
                await self._fail(event.detail)

    async def _handle_close(self, event: ConnectionClosed) -> None:
        if self._state not in _LIVE_STATES:
            logger.debug(f"Ignoring close ({event.reason.name}) in state {self._state.value}")
            return
        logger.info(f"Connection closed due to: {event.reason.name} {event.detail or ''}".rstrip())

        if event.reason.logged_out:
            logger.info("Logged out, not reconnecting")
            self._clear_pairing()
            self._transition(ConnectionState.DISCONNECTED, "logged out")
            await self._close_transport()
            return

        await self._reconnect(event.reason)

    async def _reconnect(self, reason: DisconnectReason) -> None:
        """Re-run the handshake until it succeeds or the session leaves connecting"""
        # A code issued for the dropped handshake is not valid for the next one
        self._clear_pairing()
        self._transition(ConnectionState.CONNECTING, f"reconnecting after {reason.name.lower()}")
        while self._state is ConnectionState.CONNECTING:
            self.reconnect_count += 1
            logger.info(f"Attempting to reconnect (attempt {self.reconnect_count})...")
            try:
                await self._handshake()
                return
            except TransportError as e:
                if not e.recoverable:
                    await self._fail(e.message)
                    return
                logger.warning(f"Reconnect attempt {self.reconnect_count} failed: {e}")
                await asyncio.sleep(0)
