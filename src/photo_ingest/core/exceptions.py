"""Exception hierarchy for the photo ingestion pipeline."""

from __future__ import annotations

from typing import Any, Optional


class PhotoIngestError(Exception):
    """Base exception for all photo ingestion errors."""

    error_type = "internal"


class ValidationError(PhotoIngestError):
    """Malformed input, rejected synchronously with nothing persisted."""

    error_type = "validation"


class StorageError(PhotoIngestError):
    """Object missing or unreachable, or a storage write failed."""

    error_type = "storage"


class TransferTimeoutError(PhotoIngestError):
    """A transfer or finalize call exceeded its time bound."""

    error_type = "timeout"

    def __init__(self, message: str, phase: str = "transfer", timeout: float = 0.0):
        super().__init__(message)
        self.phase = phase
        self.timeout = timeout


class ConflictError(PhotoIngestError):
    """Concurrent modification or an already-claimed key."""

    error_type = "conflict"

    def __init__(self, message: str, current: Optional[Any] = None):
        super().__init__(message)
        self.current = current


class ProcessingError(PhotoIngestError):
    """Derivative generation or metadata extraction failed."""

    error_type = "processing"


class NotFoundError(PhotoIngestError):
    """The requested record does not exist or is not visible to the caller."""

    error_type = "not_found"


class PermissionDeniedError(PhotoIngestError):
    """The caller does not own the record it tried to change."""

    error_type = "forbidden"


class UploadCancelledError(PhotoIngestError):
    """The client aborted the transfer before it committed."""

    error_type = "cancelled"


class ConfigurationError(PhotoIngestError):
    """Error raised for invalid configuration options."""

    error_type = "configuration"
