from typing import Optional


class LifecycleError(Exception):
    """Base class for document lifecycle exceptions."""

class ValidationError(LifecycleError):
    """Raised when input or patient state fails validation; include details in message."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

class RecordLockedError(ValidationError):
    """Raised when a history record marked for deletion is edited."""

class NotFoundError(LifecycleError):
    """Raised when a patient, session, record or attachment does not exist."""

class StaleOperationReference(NotFoundError):
    """Raised when a pending operation index no longer points at the expected entry."""

class RemoteCallFailure(LifecycleError):
    """Raised by a storage client when a single upload/delete call fails."""
    def __init__(self, ref: Optional[str], message: str):
        super().__init__(f"{ref}: {message}" if ref else message)
        self.ref = ref

class StorageUnavailableError(LifecycleError):
    """Raised when remote storage cannot be reached at all."""
