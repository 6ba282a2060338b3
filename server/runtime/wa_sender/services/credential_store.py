"""
WA Sender Runtime - Credential Store

Loads and persists the linked device's credential snapshot. The snapshot
is an opaque blob: whatever the transport hands over is written and read
back byte for byte.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from wa_sender.errors import StorageError, ValidationError
from wa_sender.models.credentials import DeviceCredential

logger = logging.getLogger(__name__)

CREDS_FILENAME = "creds.json"


@dataclass(frozen=True)
class CredentialBundle:
    """Device identity plus its opaque credential blob"""

    device_id: str
    blob: bytes


class CredentialStore(ABC):
    """Persistence contract for one device's credentials"""

    def __init__(self, device_id: str):
        self.device_id = device_id

    @abstractmethod
    def load(self) -> Optional[CredentialBundle]:
        """Return the stored bundle, or None when nothing was saved yet"""

    @abstractmethod
    def save(self, bundle: CredentialBundle) -> None:
        ...

    def import_external(self, blob: bytes) -> None:
        """Seed the store from an operator-supplied backup"""
        if not blob:
            raise ValidationError("Credentials file is empty")
        logger.info(f"Importing external credentials for device {self.device_id}")
        self.save(CredentialBundle(device_id=self.device_id, blob=blob))


class FileCredentialStore(CredentialStore):
    """
    Credentials stored under <auth_dir>/<device_id>/creds.json.

    Writes go to a temporary file first and are moved into place, so a
    crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, auth_dir: str, device_id: str):
        super().__init__(device_id)
        self.auth_dir = Path(auth_dir)

    @property
    def path(self) -> Path:
        return self.auth_dir / self.device_id / CREDS_FILENAME

    def load(self) -> Optional[CredentialBundle]:
        path = self.path
        try:
            if not path.is_file():
                return None
            blob = path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read credentials from {path}", details=str(e)) from e
        return CredentialBundle(device_id=self.device_id, blob=blob)

    def save(self, bundle: CredentialBundle) -> None:
        path = self.auth_dir / bundle.device_id / CREDS_FILENAME
        tmp = path.with_suffix(path.suffix + '.tmp')
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(bundle.blob)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Failed to write credentials to {path}", details=str(e)) from e
        logger.debug(f"Saved credentials for device {bundle.device_id} ({len(bundle.blob)} bytes)")


class DatabaseCredentialStore(CredentialStore):
    """Credentials stored in the device_credentials table"""

    def __init__(self, session_factory: sessionmaker, device_id: str):
        super().__init__(device_id)
        self.session_factory = session_factory

    def load(self) -> Optional[CredentialBundle]:
        db = self.session_factory()
        try:
            row = db.get(DeviceCredential, self.device_id)
            if row is None:
                return None
            return CredentialBundle(device_id=row.device_id, blob=bytes(row.blob))
        except SQLAlchemyError as e:
            raise StorageError("Failed to load credentials", details=str(e)) from e
        finally:
            db.close()

    def save(self, bundle: CredentialBundle) -> None:
        db = self.session_factory()
        try:
            row = db.get(DeviceCredential, bundle.device_id)
            if row is None:
                db.add(DeviceCredential(device_id=bundle.device_id, blob=bundle.blob))
            else:
                row.blob = bundle.blob
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError("Failed to save credentials", details=str(e)) from e
        finally:
            db.close()
        logger.debug(f"Saved credentials for device {bundle.device_id} ({len(bundle.blob)} bytes)")
