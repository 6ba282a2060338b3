import asyncio
from typing import Callable, List, Optional

import pytest

from wa_sender.config import Settings
from wa_sender.events import EventChannel
from wa_sender.services.credential_store import CredentialBundle, FileCredentialStore
from wa_sender.services.state_machine import ConnectionState, StateChanged
from wa_sender.services.transport import (
    ConnectionClosed,
    ConnectionOpened,
    DisconnectReason,
    TransportSession,
)


class FakeTransport(TransportSession):
    """Scripted in-memory transport"""

    def __init__(self, *, registered: bool = False, open_on_connect: bool = True) -> None:
        super().__init__()
        self.registered = registered
        self.open_on_connect = open_on_connect
        self.connect_errors: List[Exception] = []
        self.connect_hang: Optional[float] = None
        self.connect_credentials: List[Optional[CredentialBundle]] = []
        self.send_outcomes: List[Optional[Exception]] = []
        self.send_delay = 0.0
        self.on_send: Optional[Callable[[str], None]] = None
        self.attempts: List[str] = []
        self.sent: List[tuple] = []
        self.pairing_requests: List[str] = []
        self.pairing_code = "ABCD-1234"
        self.close_calls = 0

    @property
    def has_valid_credentials(self) -> bool:
        return self.registered

    @property
    def connect_calls(self) -> int:
        return len(self.connect_credentials)

    async def connect(self, credentials):
        self.connect_credentials.append(credentials)
        if self.connect_hang:
            await asyncio.sleep(self.connect_hang)
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        if self.open_on_connect:
            self.open()

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        return self.pairing_code

    async def send_text(self, address: str, text: str) -> None:
        self.attempts.append(address)
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.on_send is not None:
            self.on_send(address)
        if self.send_outcomes:
            outcome = self.send_outcomes.pop(0)
            if outcome is not None:
                raise outcome
        self.sent.append((address, text))

    async def close(self) -> None:
        self.close_calls += 1

    def open(self) -> None:
        self.registered = True
        self.events.publish(ConnectionOpened())

    def drop(self, reason: DisconnectReason = DisconnectReason.CONNECTION_LOST) -> None:
        self.events.publish(ConnectionClosed(reason, "test drop"))


class StubMachine:
    """Just enough of ConnectionStateMachine for the delivery queue"""

    def __init__(self, state: ConnectionState = ConnectionState.ACTIVE) -> None:
        self.events = EventChannel("connection")
        self._state = state

    @property
    def state(self) -> ConnectionState:
        return self._state

    def set_state(self, state: ConnectionState) -> None:
        previous, self._state = self._state, state
        self.events.publish(StateChanged(previous, state))


async def wait_for(predicate, *, timeout: float = 1.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def make_settings(**overrides) -> Settings:
    values = dict(
        LOG_DIR="",
        CONNECT_TIMEOUT_SECONDS=1.0,
        PAIRING_TIMEOUT_SECONDS=1.0,
        SEND_TIMEOUT_SECONDS=1.0,
        RECONNECT_BASE_DELAY_SECONDS=0.01,
        RECONNECT_MAX_DELAY_SECONDS=0.05,
        QUEUE_PAUSE_SECONDS=0.05,
        RETRY_BACKOFF_SECONDS=0.01,
        DEFAULT_MESSAGE_DELAY=0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def credential_store(tmp_path) -> FileCredentialStore:
    return FileCredentialStore(str(tmp_path / "auth"), "default")
