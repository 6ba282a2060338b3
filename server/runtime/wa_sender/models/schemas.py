"""
WA Sender Runtime - API Schemas

Pydantic models for request and response bodies of the HTTP surface.
Field aliases keep the camelCase names the operator UI uses.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StatusResponse(_CamelModel):
    state: str
    pairing_code: Optional[str] = Field(default=None, alias="pairingCode")
    qr_code: Optional[str] = Field(default=None, alias="qrCode")


class PairingRequest(_CamelModel):
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")


class PairingResponse(_CamelModel):
    pairing_code: str = Field(alias="pairingCode")


class Ack(BaseModel):
    success: bool = True
    message: str
    queued: Optional[int] = None


class QueueStatus(BaseModel):
    pending: int
    delivered: int
    dropped: int
    draining: bool


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None
