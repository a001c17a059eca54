"""
Error taxonomy for the sync engine.

Validation and authentication errors are never retried. Transient adapter
errors and stock verification mismatches are retried with backoff by the job
executor. Duplicate-entity errors carry the identifier the remote system
already holds so the local entity can be linked to it.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""


class SyncValidationError(SyncError):
    """Malformed input or missing identifiers."""


class EntityNotFoundError(SyncError):
    """Referenced entity does not exist locally."""

    def __init__(self, entity_id: int):
        super().__init__(f"Entity {entity_id} not found")
        self.entity_id = entity_id


class ConflictStateError(SyncError):
    """Entity is in CONFLICT and excluded from automatic propagation."""

    def __init__(self, entity_id: int):
        super().__init__(f"Entity {entity_id} is in conflict and awaits manual resolution")
        self.entity_id = entity_id


class AdapterError(SyncError):
    """Failure reported by an external system adapter."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientAdapterError(AdapterError):
    """Network failure, timeout, rate limit or server error."""

    retryable = True


class AuthenticationError(AdapterError):
    """Expired or revoked credentials for an external system."""


class DuplicateEntityError(AdapterError):
    """The remote system already holds this entity under another identifier."""

    def __init__(self, existing_external_id: str, message: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(
            message or f"Entity already exists remotely as {existing_external_id}",
            status_code=status_code
        )
        self.existing_external_id = str(existing_external_id)


class StockVerificationError(AdapterError):
    """Inventory read back after a push differs from the value written."""

    retryable = True

    def __init__(self, external_id: str, expected: int, actual: int):
        super().__init__(
            f"Stock verification failed for {external_id}: wrote {expected}, read back {actual}"
        )
        self.external_id = external_id
        self.expected = expected
        self.actual = actual


def is_retryable(exc: Exception) -> bool:
    """Whether the job executor should reschedule after this error."""
    if isinstance(exc, AdapterError):
        return exc.retryable
    if isinstance(exc, SyncError):
        return False
    # Unclassified errors are retried
    return True
