from wa_sender.database import Base
from wa_sender.models.credentials import DeviceCredential
from wa_sender.models.message import OutboundMessage, SendRequest, TargetKind, resolve_address

__all__ = [
    "Base",
    "DeviceCredential",
    "OutboundMessage",
    "SendRequest",
    "TargetKind",
    "resolve_address",
]
