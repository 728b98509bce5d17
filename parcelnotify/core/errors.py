from __future__ import annotations


class ParcelNotifyError(Exception):
    """Base error for parcelnotify."""


class MissingSubjectError(ParcelNotifyError):
    """Subject-bound intent created without a subject id."""


class SmsConfigError(ParcelNotifyError):
    """Missing or invalid SMS transport configuration."""


class SmsTransportError(ParcelNotifyError):
    """SMS gateway request failure."""


class SmsRecordNotFoundError(ParcelNotifyError):
    """No outgoing SMS record with the requested id."""


class SmsActionError(ParcelNotifyError):
    """Operator action rejected for the current record state."""

    def __init__(self, code: str, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class DatabaseError(ParcelNotifyError):
    """Store write did not produce the expected row."""
