"""
WA Sender Runtime - Error Taxonomy

Every failure the session core reports is a SenderError subclass so the
HTTP layer can map it to a status code and an {error, details} body.
"""

from typing import Optional


class SenderError(Exception):
    """Base class for session and delivery failures"""

    status_code = 500
    title = "Internal Server Error"

    def __init__(self, message: str, *, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or message


class ValidationError(SenderError):
    """Bad input, rejected before any side effect"""

    status_code = 400
    title = "Invalid request"


class InvalidStateError(SenderError):
    """Operation not permitted in the current connection state"""

    status_code = 409
    title = "Invalid session state"


class StorageError(SenderError):
    """Credential persistence I/O failure"""

    title = "Credential storage failure"


class TransportError(SenderError):
    """
    Network or protocol failure talking to the messaging network.

    recoverable=False marks a terminal failure (logged out, fatal fault)
    after which the session must not reconnect on its own.
    """

    status_code = 502
    title = "Messaging network failure"

    def __init__(
        self,
        message: str,
        *,
        recoverable: bool = True,
        reason: Optional[str] = None,
        details: Optional[str] = None,
    ):
        super().__init__(message, details=details)
        self.recoverable = recoverable
        self.reason = reason


class ExhaustedRetriesError(SenderError):
    """A queued message was dropped; only ever logged, never raised to callers"""

    def __init__(self, target: str, attempts: int, reason: str):
        super().__init__(
            f"Dropping message to {target} after {attempts} failed attempts: {reason}"
        )
        self.target = target
        self.attempts = attempts
        self.reason = reason
