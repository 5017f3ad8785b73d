"""Error taxonomy for the attendance system.

Matching and enrollment report business outcomes (no face, duplicate key)
as typed results where callers are expected to branch on them; the
exceptions below cover the remaining failure classes.
"""

from typing import Optional


class FaceAttendanceError(Exception):
    """Base class for all face_attendance errors."""
    pass


class InvalidDimension(FaceAttendanceError, ValueError):
    """Raised when a vector length does not match the configured dimension."""

    def __init__(self, expected: int, actual: int, where: str = "probe"):
        self.expected = expected
        self.actual = actual
        self.where = where
        super().__init__(
            f"Invalid {where} dimension: expected {expected}, got {actual}"
        )


class DuplicateIdentity(FaceAttendanceError):
    """Raised when an identity key is already enrolled."""

    def __init__(self, identity_key: str):
        self.identity_key = identity_key
        super().__init__(f"Identity key already enrolled: {identity_key}")


class LockTimeout(FaceAttendanceError):
    """Raised when lock acquisition times out."""
    pass


class SyncDeliveryError(FaceAttendanceError):
    """Base class for remote delivery failures.

    Attributes:
        retryable: Whether a later drain may retry the item
        status_code: HTTP status code, when the remote answered
    """
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientError(SyncDeliveryError):
    """Timeout or connectivity failure; retried with backoff."""
    retryable = True


class PermanentError(SyncDeliveryError):
    """Remote validation or conflict rejection; never retried."""
    retryable = False


class StorageCorruption(FaceAttendanceError):
    """Raised when the durable local store cannot be read safely."""
    pass
