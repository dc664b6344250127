"""Shared data models for the photo ingestion pipeline."""

import os
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from .exceptions import ConfigurationError


class SessionState(str, Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    FINALIZED = "finalized"
    EXPIRED = "expired"


class ProcessingStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class ModerationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED = "flagged"


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UploadPhase(str, Enum):
    TRANSFER = "transfer"
    FINALIZE = "finalize"
    DONE = "done"


class UploadMode(str, Enum):
    TWO_PHASE = "two_phase"
    LEGACY = "legacy"


def _env(name: str) -> Optional[str]:
    value = os.getenv(f"PHOTO_INGEST_{name}")
    return value if value not in (None, "") else None


class IngestConfig(BaseModel):
    """Configuration for the ingestion pipeline."""

    bucket: str = "photo-app"
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    public_base_url: Optional[str] = None
    raw_prefix: str = "photo-app-raw"
    derivative_prefix: str = "photo-app-images"

    presign_expires_seconds: int = 300
    max_file_size: int = 25 * 1024 * 1024
    session_ttl_seconds: int = 300
    session_grace_seconds: int = 3600

    worker_count: int = 4
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 300.0
    attempt_timeout_seconds: float = 120.0
    lease_seconds: float = 600.0

    transfer_timeout_seconds: float = 120.0
    bulk_transfer_timeout_seconds: float = 300.0
    finalize_timeout_seconds: float = 30.0
    chunk_size: int = 256 * 1024

    listing_cache_ttl_seconds: float = 60.0
    sweep_interval_seconds: float = 60.0
    sweep_delete_orphans: bool = False

    derivative_sizes: Dict[str, Optional[int]] = Field(
        default_factory=lambda: {
            "thumbnail": 200,
            "small": 800,
            "regular": 1080,
            "original": None,
        }
    )
    derivative_formats: List[str] = Field(default_factory=lambda: ["webp", "jpeg"])
    palette_size: int = 3
    # GIFs above this size are rendered without EXIF or palette extraction.
    metadata_gif_limit_bytes: int = 2 * 1024 * 1024

    # Empty means any non-blank category is accepted.
    categories: List[str] = Field(default_factory=list)
    admin_owner_ids: List[str] = Field(default_factory=list)
    auto_approve: bool = False

    @model_validator(mode="after")
    def _check_bounds(self) -> "IngestConfig":
        if self.worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if not self.derivative_formats:
            raise ValueError("at least one derivative format is required")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "IngestConfig":
        """Build a config from PHOTO_INGEST_* environment variables."""
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = _env(name.upper())
            if raw is None:
                continue
            if name in ("derivative_formats", "categories", "admin_owner_ids"):
                values[name] = [part.strip() for part in raw.split(",") if part.strip()]
            elif name == "derivative_sizes":
                sizes: Dict[str, Optional[int]] = {}
                for pair in raw.split(","):
                    key, _, width = pair.partition(":")
                    sizes[key.strip()] = int(width) if width.strip() else None
                values[name] = sizes
            else:
                values[name] = raw
        values.update(overrides)
        try:
            return cls(**values)
        except (PydanticValidationError, ValueError) as exc:
            raise ConfigurationError(f"Invalid ingestion configuration: {exc}") from exc

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the next attempt after `attempt` failed attempts."""
        delay = self.backoff_base_seconds * (self.backoff_factor ** max(attempt - 1, 0))
        return min(delay, self.backoff_cap_seconds)


class Coordinates(BaseModel):
    latitude: float
    longitude: float


class MetadataDraft(BaseModel):
    """Client-supplied metadata registered at finalize time."""

    title: str = ""
    category: str = ""
    location: Optional[str] = None
    coordinates: Optional[Any] = None
    tags: Optional[Any] = None
    camera_model: Optional[str] = None


class UploadSession(BaseModel):
    upload_id: str
    object_key: str
    owner_id: str
    content_type: str = "application/octet-stream"
    issued_at: float = Field(default_factory=time.time)
    expires_at: float
    state: SessionState = SessionState.PENDING


class TransferTarget(BaseModel):
    """A time-bound, scoped write location issued to a client."""

    upload_id: str
    object_key: str
    upload_url: str
    method: str = "PUT"
    headers: Dict[str, str] = Field(default_factory=dict)
    expires_at: float
    expires_in: int
    max_file_size: int


class ImageRecord(BaseModel):
    image_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str
    upload_id: str
    source_key: str
    title: str
    category_ref: str
    location: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    tags: List[str] = Field(default_factory=list)
    exif: Dict[str, Any] = Field(default_factory=dict)
    dominant_colors: List[str] = Field(default_factory=list)
    derivatives: Dict[str, str] = Field(default_factory=dict)
    processing_status: ProcessingStatus = ProcessingStatus.QUEUED
    processing_error: Optional[str] = None
    moderation_status: ModerationStatus = ModerationStatus.PENDING
    version: int = 1
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    @property
    def publicly_listable(self) -> bool:
        return (
            self.processing_status == ProcessingStatus.COMPLETE
            and self.moderation_status == ModerationStatus.APPROVED
        )


class ProcessingJob(BaseModel):
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    image_id: str
    source_key: str
    attempt: int = 0
    max_attempts: int = 3
    next_attempt_at: float = Field(default_factory=time.time)
    last_error: Optional[str] = None
    state: JobState = JobState.QUEUED
    produced: Dict[str, str] = Field(default_factory=dict)
    metadata_extracted: bool = False
    exif: Dict[str, Any] = Field(default_factory=dict)
    coordinates: Optional[Coordinates] = None
    dominant_colors: List[str] = Field(default_factory=list)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[float] = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class BatchUploadReport(BaseModel):
    batch_id: Optional[str] = None
    success_count: int = Field(ge=0)
    failed_count: int = Field(default=0, ge=0)
    total_count: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_arithmetic(self) -> "BatchUploadReport":
        if self.success_count + self.failed_count > self.total_count:
            raise ValueError(
                "success_count + failed_count must not exceed total_count"
            )
        return self


class ProgressEvent(BaseModel):
    upload_id: str = ""
    phase: UploadPhase
    percent: int = Field(ge=0, le=100)
    bytes_sent: int = 0
    bytes_total: int = 0


class UploadResult(BaseModel):
    """Terminal outcome of one coordinated upload."""

    success: bool = False
    upload_id: str = ""
    image_id: Optional[str] = None
    processing_status: Optional[ProcessingStatus] = None
    error: str = ""
    error_type: str = ""
    cancelled: bool = False


class BatchOutcome(BaseModel):
    batch_id: Optional[str] = None
    results: List[UploadResult] = Field(default_factory=list)
    notified: bool = False

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed_count(self) -> int:
        return len(self.results) - self.success_count


class Pagination(BaseModel):
    page: int = 1
    limit: int = 20
    total: int = 0
    pages: int = 0


class Page(BaseModel):
    items: List[Any] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)


class DownloadTarget(BaseModel):
    image_id: str
    variant_key: str
    object_key: str
    url: str
    content_type: str


def variant_key(size_name: str, fmt: str) -> str:
    """Key under which a derivative is stored in `ImageRecord.derivatives`."""
    return f"{size_name}.{fmt}"
