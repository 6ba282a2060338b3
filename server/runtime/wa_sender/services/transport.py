"""
WA Sender Runtime - Transport Session Contract

The one live connection to the messaging network. Implementations report
connection changes, pairing challenges and credential updates as events on
their channel rather than through callbacks.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from wa_sender.events import EventChannel
from wa_sender.services.credential_store import CredentialBundle


class DisconnectReason(enum.Enum):
    """Close status codes reported by the network"""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    MULTIDEVICE_MISMATCH = 411
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    UNKNOWN = 0

    @classmethod
    def from_status(cls, status_code: Optional[int]) -> "DisconnectReason":
        for reason in cls:
            if reason.value == status_code:
                return reason
        return cls.UNKNOWN

    @property
    def logged_out(self) -> bool:
        return self is DisconnectReason.LOGGED_OUT


@dataclass(frozen=True)
class ConnectionOpened:
    pass


@dataclass(frozen=True)
class ConnectionClosed:
    reason: DisconnectReason
    detail: Optional[str] = None


@dataclass(frozen=True)
class PairingChallenge:
    """Scannable challenge (QR payload) for linking without a pairing code"""

    challenge: bytes


@dataclass(frozen=True)
class CredentialsUpdated:
    bundle: CredentialBundle


@dataclass(frozen=True)
class TransportFault:
    """Unrecoverable failure; the session must not reconnect on its own"""

    detail: str


class TransportSession(ABC):
    """
    Abstract transport used by the connection state machine.

    connect() raises TransportError when the connection cannot be
    established. Once it has returned, drops are reported only as
    ConnectionClosed events.
    """

    def __init__(self):
        self.events = EventChannel("transport")

    @property
    @abstractmethod
    def has_valid_credentials(self) -> bool:
        ...

    @abstractmethod
    async def connect(self, credentials: Optional[CredentialBundle]) -> None:
        ...

    @abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        ...

    @abstractmethod
    async def send_text(self, address: str, text: str) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
