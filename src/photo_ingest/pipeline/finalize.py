"""Finalize handler: turns a transferred object into a durable image record."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..core.error_handling import best_effort
from ..core.exceptions import (
    ConflictError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from ..core.models import (
    ImageRecord,
    IngestConfig,
    MetadataDraft,
    ProcessingJob,
    ProcessingStatus,
    SessionState,
    UploadSession,
)
from ..core.observability import LogContext, MetricsCollector, timed_operation
from ..core.protocols import CategoryResolver, LoggerProtocol, ModerationPolicy
from ..storage.object_store import ObjectStoreClient
from ..storage.repository import ImageRepository
from ..storage.session_store import UploadSessionStore
from .issuer import UPLOAD_ID_PATTERN, PresignedTransferIssuer
from .job_queue import JobQueue
from .validation import validate_draft


@dataclass
class FinalizeResult:
    """The image record for an upload and whether this call created it."""

    record: ImageRecord
    created: bool


class FinalizeHandler:
    """
    Second phase of the two-phase upload.

    Validates the session and the stored object, persists exactly one
    ImageRecord per upload id, and hands processing to the job queue. A
    replayed finalize returns the existing record without enqueueing again.
    """

    def __init__(
        self,
        session_store: UploadSessionStore,
        repository: ImageRepository,
        object_store: ObjectStoreClient,
        job_queue: JobQueue,
        config: IngestConfig,
        categories: CategoryResolver,
        moderation: ModerationPolicy,
        logger: LoggerProtocol,
        listing_invalidator: Optional[Callable[[], None]] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._sessions = session_store
        self._repository = repository
        self._object_store = object_store
        self._queue = job_queue
        self._config = config
        self._categories = categories
        self._moderation = moderation
        self._logger = logger
        self._invalidate_listings = listing_invalidator
        self._metrics_collector = metrics_collector
        self._clock = clock

    @timed_operation("finalize")
    def finalize(self, upload_id: str, owner_id: str, metadata: MetadataDraft) -> FinalizeResult:
        """
        Register metadata for a transferred upload.

        Raises:
            ValidationError: malformed id, unknown or expired session, bad metadata
            ConflictError: the upload belongs to another owner
            StorageError: the object was never written or cannot be inspected
        """
        log_context = LogContext(
            operation="finalize", component="finalize_handler", owner_id=owner_id
        ).with_metadata(upload_id=upload_id)

        if not upload_id or not UPLOAD_ID_PATTERN.match(upload_id):
            raise ValidationError(f"Malformed upload id: {upload_id!r}")

        existing = self._repository.get_by_upload_id(upload_id)
        if existing is not None:
            return self._replayed(existing, owner_id, log_context)

        try:
            session = self._require_session(upload_id, owner_id)
        except ValidationError:
            # A concurrent finalize may have committed since the lookup above.
            existing = self._repository.get_by_upload_id(upload_id)
            if existing is None:
                raise
            return self._replayed(existing, owner_id, log_context)
        self._verify_object(session)
        fields = validate_draft(metadata, self._categories)

        record = ImageRecord(
            owner_id=owner_id,
            upload_id=upload_id,
            source_key=session.object_key,
            processing_status=ProcessingStatus.QUEUED,
            moderation_status=self._moderation.initial_status(owner_id),
            created_at=self._clock(),
            updated_at=self._clock(),
            **fields,
        )
        stored, created = self._repository.create_if_absent(record)
        if not created:
            if stored.owner_id != owner_id:
                raise ConflictError(f"Upload {upload_id} belongs to another owner")
            self._logger.info("Concurrent finalize lost the race; returning winner", log_context)
            return FinalizeResult(record=stored, created=False)

        self._sessions.mark_finalized(upload_id)
        job = self._enqueue(stored)
        self._listings_changed()

        self._logger.info(
            "Upload finalized and queued for processing",
            log_context.with_metadata(image_id=stored.image_id, job_id=job.job_id),
        )
        return FinalizeResult(record=stored, created=True)

    def replace_source(self, image_id: str, owner_id: str, upload_id: str) -> ImageRecord:
        """
        Point an existing image at a newly transferred object and reprocess it.

        Derivative keys depend only on the image id, so the new derivatives
        overwrite the old ones; the previous raw object is deleted best-effort.
        Refused with ConflictError while an attempt for the image is running.
        """
        log_context = LogContext(
            operation="replace_source", component="finalize_handler", owner_id=owner_id
        ).with_metadata(image_id=image_id, upload_id=upload_id)

        record = self._repository.require(image_id)
        if record.owner_id != owner_id:
            raise PermissionDeniedError(f"Image {image_id} is not owned by {owner_id}")
        if not upload_id or not UPLOAD_ID_PATTERN.match(upload_id):
            raise ValidationError(f"Malformed upload id: {upload_id!r}")

        session = self._require_session(upload_id, owner_id)
        self._verify_object(session)

        # Unclaimed jobs go; a claimed one would race the new job on the same derivative keys.
        self._queue.cancel(image_id)
        if self._queue.in_flight_for(image_id):
            raise ConflictError(
                f"Image {image_id} is being processed; retry the replacement once it settles",
                current=record,
            )
        previous_source = record.source_key

        def swap_source(current: ImageRecord) -> ImageRecord:
            current.source_key = session.object_key
            current.derivatives = {}
            current.dominant_colors = []
            current.processing_status = ProcessingStatus.QUEUED
            current.processing_error = None
            return current

        updated = self._repository.update(image_id, swap_source)
        self._sessions.mark_finalized(upload_id)
        job = self._enqueue(updated)
        self._listings_changed()

        if previous_source and previous_source != updated.source_key:
            best_effort(
                "delete replaced source", self._object_store.delete, previous_source
            )

        self._logger.info(
            "Image source replaced and queued for processing",
            log_context.with_metadata(job_id=job.job_id),
        )
        return updated

    def reprocess(self, image_id: str, owner_id: str) -> ImageRecord:
        """Re-enqueue a record whose processing failed."""
        record = self._repository.require(image_id)
        if record.owner_id != owner_id:
            raise PermissionDeniedError(f"Image {image_id} is not owned by {owner_id}")
        if record.processing_status != ProcessingStatus.FAILED:
            raise ConflictError(
                f"Image {image_id} is {record.processing_status.value}, only failed images can be reprocessed",
                current=record,
            )

        def requeue(current: ImageRecord) -> ImageRecord:
            if current.processing_status != ProcessingStatus.FAILED:
                raise ConflictError(f"Image {image_id} changed while requeueing", current=current)
            current.processing_status = ProcessingStatus.QUEUED
            current.processing_error = None
            return current

        updated = self._repository.update(image_id, requeue)
        job = self._enqueue(updated)
        self._logger.info(
            "Failed image requeued",
            LogContext(operation="reprocess", component="finalize_handler", owner_id=owner_id).with_metadata(
                image_id=image_id, job_id=job.job_id
            ),
        )
        return updated

    def _require_session(self, upload_id: str, owner_id: str) -> UploadSession:
        session = self._sessions.get(upload_id)
        if session is None:
            raise ValidationError(f"Unknown upload id: {upload_id}")
        if session.owner_id != owner_id:
            raise ConflictError(f"Upload {upload_id} belongs to another owner")
        if session.state == SessionState.EXPIRED:
            raise ValidationError(f"Upload session {upload_id} has expired")
        if session.state == SessionState.FINALIZED:
            raise ValidationError(f"Upload {upload_id} was already used")
        return session

    def _replayed(self, existing: ImageRecord, owner_id: str, log_context: LogContext) -> FinalizeResult:
        if existing.owner_id != owner_id:
            raise ConflictError(f"Upload {existing.upload_id} belongs to another owner")
        self._logger.info("Finalize replayed; returning existing record", log_context)
        return FinalizeResult(record=existing, created=False)

    def _verify_object(self, session: UploadSession) -> None:
        head = self._object_store.head(session.object_key)
        if head is None:
            raise StorageError(
                f"Uploaded object {session.object_key} not found; transfer did not complete"
            )
        content_type = head["content_type"].split(";", 1)[0].strip().lower()
        if not content_type.startswith("image/"):
            raise ValidationError(f"Stored object is not an image ({content_type})")
        if head["size"] <= 0:
            raise ValidationError("Stored object is empty")
        if head["size"] > self._config.max_file_size:
            raise ValidationError(
                f"Stored object is {head['size']} bytes, limit is {self._config.max_file_size}"
            )

    def _enqueue(self, record: ImageRecord) -> ProcessingJob:
        return self._queue.enqueue(
            ProcessingJob(
                image_id=record.image_id,
                source_key=record.source_key,
                max_attempts=self._config.max_attempts,
                next_attempt_at=self._clock(),
            )
        )

    def _listings_changed(self) -> None:
        if self._invalidate_listings is not None:
            self._invalidate_listings()


class SinglePhaseUploader:
    """
    Legacy upload path: the server receives the bytes itself, stores them
    under a freshly issued session and finalizes in the same call.
    """

    def __init__(
        self,
        issuer: PresignedTransferIssuer,
        object_store: ObjectStoreClient,
        finalize_handler: FinalizeHandler,
    ):
        self._issuer = issuer
        self._object_store = object_store
        self._finalize = finalize_handler

    def upload(
        self,
        owner_id: str,
        file_name: str,
        content_type: str,
        data: bytes,
        metadata: MetadataDraft,
    ) -> FinalizeResult:
        target = self._issuer.issue(owner_id, content_type, file_name, len(data))
        self._object_store.put_bytes(target.object_key, data, target.headers["Content-Type"])
        return self._finalize.finalize(target.upload_id, owner_id, metadata)
