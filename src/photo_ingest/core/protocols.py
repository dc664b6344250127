"""Protocol definitions for dependency injection and testability."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Protocol

from .models import (
    MetadataDraft,
    ModerationStatus,
    TransferTarget,
)


class S3ClientProtocol(Protocol):
    """Protocol for the subset of S3 client operations the pipeline uses."""

    def get_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        """Get object from S3."""
        ...

    def put_object(self, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> Dict[str, Any]:
        """Put object to S3."""
        ...

    def head_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        """Fetch object metadata without the body."""
        ...

    def delete_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        """Delete an object."""
        ...

    def generate_presigned_url(
        self,
        ClientMethod: str,
        Params: Optional[Dict[str, Any]] = None,
        ExpiresIn: int = 3600,
        HttpMethod: Optional[str] = None,
    ) -> str:
        """Create a time-bound URL for a single operation."""
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log debug message."""
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log info message."""
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log warning message."""
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log error message."""
        ...


class CategoryResolver(Protocol):
    """Resolves a client category reference (id or name) to a canonical ref."""

    def resolve(self, category: str) -> Optional[str]:
        ...


class ModerationPolicy(Protocol):
    """Supplies the initial moderation status for a new image."""

    def initial_status(self, owner_id: str) -> ModerationStatus:
        ...


class NotificationSink(Protocol):
    """Delivers owner notifications (upload completed, bulk summary, ...)."""

    def notify(self, owner_id: str, kind: str, payload: Dict[str, Any]) -> None:
        ...


class DerivativeRenderer(Protocol):
    """Protocol for image transform operations used by the worker."""

    def render(
        self, image_bytes: bytes, width: Optional[int], fmt: str, quality: Optional[int] = None
    ) -> bytes:
        """Produce one derivative at `width` (None keeps size) encoded as `fmt`."""
        ...

    def extract_metadata(self, image_bytes: bytes) -> Dict[str, Any]:
        """Extract EXIF, coordinates and palette from image bytes."""
        ...


class UploadTransport(ABC):
    """Abstract client-side transport used by the upload coordinator."""

    @abstractmethod
    def request_target(
        self, content_type: str, file_name: str, file_size: int
    ) -> TransferTarget:
        """Ask the issuer for a presigned transfer target."""
        ...

    @abstractmethod
    def transfer(
        self,
        target: TransferTarget,
        chunks: Iterable[bytes],
        timeout: float,
        size: Optional[int] = None,
    ) -> None:
        """Write the chunks to the transfer target."""
        ...

    @abstractmethod
    def finalize(
        self, upload_id: str, draft: MetadataDraft, timeout: float
    ) -> Dict[str, Any]:
        """Register metadata; returns `{"image_id", "processing_status"}`."""
        ...

    @abstractmethod
    def legacy_upload(
        self,
        file_name: str,
        content_type: str,
        chunks: Iterable[bytes],
        draft: MetadataDraft,
        timeout: float,
    ) -> Dict[str, Any]:
        """Single-phase upload: bytes and metadata in one server call."""
        ...

    @abstractmethod
    def replace(
        self, image_id: str, upload_id: str, timeout: float
    ) -> Dict[str, Any]:
        """Point an existing image at a freshly transferred source object."""
        ...

    @abstractmethod
    def notify_batch(
        self,
        success_count: int,
        total_count: int,
        failed_count: int,
        batch_id: Optional[str] = None,
    ) -> bool:
        """Send the bulk upload summary; True when it was delivered."""
        ...

