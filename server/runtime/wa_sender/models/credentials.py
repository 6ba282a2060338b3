"""
WA Sender Runtime - Device Credential Model

SQLAlchemy model for the device_credentials table.
One row per linked device, holding its opaque credential snapshot.
"""

from sqlalchemy import Column, String, LargeBinary, DateTime
from sqlalchemy.sql import func
from wa_sender.database import Base


class DeviceCredential(Base):
    """
    Device credential table model.

    The blob is stored exactly as the transport produced it; the service
    never parses it.
    """
    __tablename__ = "device_credentials"

    device_id = Column(String(100), primary_key=True)
    blob = Column(LargeBinary, nullable=False)
    updated_at = Column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
