"""
WA Sender Runtime - Outbound Message Model

In-memory representation of one requested delivery and of the send
requests an operator submits in a batch.
"""

import enum
from dataclasses import dataclass
from typing import List

INDIVIDUAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"


class TargetKind(str, enum.Enum):
    INDIVIDUAL = "individual"
    GROUP = "group"


@dataclass
class OutboundMessage:
    """
    One queued delivery.

    Only the delivery queue mutates attempts_made.
    """

    target_id: str
    body: str
    target_kind: TargetKind = TargetKind.INDIVIDUAL
    delay_after_seconds: int = 1
    retry_enabled: bool = True
    max_retries: int = 3
    attempts_made: int = 0

    @property
    def address(self) -> str:
        return resolve_address(self.target_id, self.target_kind)


@dataclass
class SendRequest:
    """A batch entry: every body is sent to every target"""

    targets: List[str]
    bodies: List[str]
    target_kind: TargetKind = TargetKind.INDIVIDUAL
    delay_after_seconds: int = 1
    retry_enabled: bool = True
    max_retries: int = 3


def resolve_address(target_id: str, target_kind: TargetKind) -> str:
    """Qualify a raw phone number or group id with its namespace suffix"""
    if target_kind is TargetKind.GROUP:
        return f"{target_id}{GROUP_SUFFIX}"
    return f"{target_id}{INDIVIDUAL_SUFFIX}"
