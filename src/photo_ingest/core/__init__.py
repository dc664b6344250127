"""Core utilities and shared components for the photo ingestion pipeline."""

from .image_utils import (
    derivative_object_key,
    extract_coordinates,
    extract_dominant_colors,
    extract_exif_data,
    file_extension,
    raw_object_key,
    render_derivative,
)
from .logging_config import (
    configure_worker_logging,
    get_logger,
    setup_logger,
)
from .exceptions import (
    PhotoIngestError,
    ValidationError,
    StorageError,
    TransferTimeoutError,
    ConflictError,
    ProcessingError,
    NotFoundError,
    PermissionDeniedError,
    UploadCancelledError,
    ConfigurationError,
)
from .error_handling import with_error_handling, retry_s3_operation, best_effort
from .models import (
    ImageRecord,
    IngestConfig,
    MetadataDraft,
    ProcessingJob,
    UploadSession,
)

__all__ = [
    "IngestConfig",
    "ImageRecord",
    "MetadataDraft",
    "ProcessingJob",
    "UploadSession",
    "derivative_object_key",
    "extract_coordinates",
    "extract_dominant_colors",
    "extract_exif_data",
    "file_extension",
    "raw_object_key",
    "render_derivative",
    "setup_logger",
    "get_logger",
    "configure_worker_logging",
    "PhotoIngestError",
    "ValidationError",
    "StorageError",
    "TransferTimeoutError",
    "ConflictError",
    "ProcessingError",
    "NotFoundError",
    "PermissionDeniedError",
    "UploadCancelledError",
    "ConfigurationError",
    "with_error_handling",
    "retry_s3_operation",
    "best_effort",
]
