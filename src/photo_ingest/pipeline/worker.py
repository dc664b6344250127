"""Processing worker: derivative generation and metadata extraction per job."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.error_handling import best_effort, with_error_handling
from ..core.exceptions import NotFoundError, ProcessingError
from ..core.image_utils import (
    content_type_for,
    derivative_object_key,
    extract_coordinates,
    extract_dominant_colors,
    extract_exif_data,
    load_image,
    quality_for,
    render_derivative,
)
from ..core.models import (
    Coordinates,
    ImageRecord,
    IngestConfig,
    JobState,
    ProcessingJob,
    ProcessingStatus,
    variant_key,
)
from ..core.observability import LogContext, MetricsCollector, timed_operation
from ..core.protocols import DerivativeRenderer, LoggerProtocol, NotificationSink
from ..storage.object_store import DERIVATIVE_CACHE_CONTROL, ObjectStoreClient
from ..storage.repository import ImageRepository

Variant = Tuple[str, Optional[int], str]


class PillowDerivativeRenderer:
    """Pillow-backed renderer; pure functions of the source bytes."""

    def __init__(self, palette_size: int = 3):
        self.palette_size = palette_size

    @with_error_handling
    def render(
        self, image_bytes: bytes, width: Optional[int], fmt: str, quality: Optional[int] = None
    ) -> bytes:
        image = load_image(image_bytes)
        if quality is None:
            return render_derivative(image, width, fmt)
        return render_derivative(image, width, fmt, quality)

    @with_error_handling
    def extract_metadata(self, image_bytes: bytes) -> Dict[str, Any]:
        image = load_image(image_bytes)
        return {
            "exif": extract_exif_data(image),
            "coordinates": extract_coordinates(image),
            "dominant_colors": extract_dominant_colors(image, k=self.palette_size),
        }


class _JobSuperseded(Exception):
    """The record no longer points at this job's source."""


class ProcessingWorker:
    """
    Runs one attempt of a ProcessingJob and returns the job's next state.

    Derivatives already recorded in `job.produced` are skipped, so a retry
    only redoes the variants that failed. Records are written through the
    repository's version-checked update, which lets concurrent metadata
    edits and worker writes both land.
    """

    def __init__(
        self,
        repository: ImageRepository,
        object_store: ObjectStoreClient,
        config: IngestConfig,
        logger: LoggerProtocol,
        renderer: Optional[DerivativeRenderer] = None,
        notifications: Optional[NotificationSink] = None,
        listing_invalidator: Optional[Callable[[], None]] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._repository = repository
        self._object_store = object_store
        self._config = config
        self._logger = logger
        self._renderer = renderer or PillowDerivativeRenderer(config.palette_size)
        self._notifications = notifications
        self._invalidate_listings = listing_invalidator
        self._metrics_collector = metrics_collector
        self._clock = clock

    def required_variants(self) -> List[Variant]:
        return [
            (size_name, width, fmt)
            for size_name, width in self._config.derivative_sizes.items()
            for fmt in self._config.derivative_formats
        ]

    @timed_operation("process_job")
    def process(self, job: ProcessingJob) -> ProcessingJob:
        log_context = LogContext(
            correlation_id=job.job_id, operation="process_job", component="processing_worker"
        ).with_metadata(image_id=job.image_id, attempt=job.attempt)

        try:
            self._mark_processing(job)
            self._logger.debug("Fetching source object", log_context.with_operation("download_source"))
            source = self._object_store.get_bytes(job.source_key)

            if not job.metadata_extracted:
                self._extract_metadata(job, source, log_context.with_operation("extract_metadata"))

            self._render_pending(job, source, log_context)
            record = self._complete(job)
        except (NotFoundError, _JobSuperseded) as e:
            self._logger.info(
                "Image deleted or replaced during processing; nothing written",
                log_context.with_metadata(reason=str(e) or type(e).__name__),
            )
            job.state = JobState.CANCELLED
            return job
        except Exception as e:  # noqa: BLE001
            return self._handle_failure(job, e, log_context)

        job.state = JobState.COMPLETE
        job.last_error = None
        self._logger.info(
            "Image processed",
            log_context,
            derivatives=len(record.derivatives),
        )
        self._notify(record.owner_id, "upload_completed", {"image_id": record.image_id, "title": record.title})
        self._listings_changed()
        return job

    def _mark_processing(self, job: ProcessingJob) -> None:
        def start(current: ImageRecord) -> ImageRecord:
            if current.source_key != job.source_key:
                raise _JobSuperseded(f"source changed to {current.source_key}")
            current.processing_status = ProcessingStatus.PROCESSING
            return current

        self._repository.update(job.image_id, start)

    def _extract_metadata(self, job: ProcessingJob, source: bytes, log_context: LogContext) -> None:
        """
        Fill the job's EXIF, coordinates and palette from the source.

        Large GIFs are skipped, and a failed extraction leaves the fields
        empty; neither stops derivative generation.
        """
        job.metadata_extracted = True
        if source[:4] == b"GIF8" and len(source) > self._config.metadata_gif_limit_bytes:
            self._logger.debug(f"Skipping metadata for a {len(source)} byte GIF", log_context)
            return

        self._logger.debug("Extracting metadata", log_context)
        try:
            metadata = self._renderer.extract_metadata(source) or {}
        except Exception as e:  # noqa: BLE001
            self._logger.warning(
                "Metadata extraction failed; continuing without it",
                log_context.with_metadata(error=f"{type(e).__name__}: {e}"),
            )
            return
        job.exif = metadata.get("exif") or {}
        coordinates = metadata.get("coordinates")
        job.coordinates = Coordinates(**coordinates) if coordinates else None
        job.dominant_colors = list(metadata.get("dominant_colors") or [])

    def _render_pending(self, job: ProcessingJob, source: bytes, log_context: LogContext) -> None:
        pending = [
            variant for variant in self.required_variants()
            if variant_key(variant[0], variant[2]) not in job.produced
        ]
        if not pending:
            return

        self._logger.debug(
            f"Rendering {len(pending)} derivative(s)", log_context.with_operation("render_derivatives")
        )
        executor = ThreadPoolExecutor(
            max_workers=min(len(pending), 4), thread_name_prefix=f"render-{job.image_id[:8]}"
        )
        # Set once the attempt gives up on its renders; stragglers must not write.
        abandoned = threading.Event()
        futures = {
            executor.submit(self._render_one, job, source, variant, abandoned): variant_key(variant[0], variant[2])
            for variant in pending
        }
        done, not_done = wait(futures, timeout=self._config.attempt_timeout_seconds)
        if not_done:
            abandoned.set()

        errors: List[str] = []
        stale: Optional[Exception] = None
        for future in done:
            key = futures[future]
            try:
                job.produced[key] = future.result()
            except (NotFoundError, _JobSuperseded) as e:
                stale = e
            except Exception as e:  # noqa: BLE001
                errors.append(f"{key}: {e}")
        for future in not_done:
            future.cancel()
            errors.append(f"{futures[future]}: timed out after {self._config.attempt_timeout_seconds}s")
        executor.shutdown(wait=False, cancel_futures=True)

        if stale is not None:
            raise stale
        if errors:
            raise ProcessingError(
                f"{len(errors)} of {len(pending)} derivative(s) failed: " + "; ".join(sorted(errors))
            )

    def _render_one(
        self, job: ProcessingJob, source: bytes, variant: Variant, abandoned: threading.Event
    ) -> str:
        size_name, width, fmt = variant
        body = self._renderer.render(source, width, fmt, quality_for(size_name))
        if abandoned.is_set():
            raise ProcessingError(f"attempt {job.attempt} abandoned before {size_name}.{fmt} was stored")
        self._ensure_current(job)
        key = derivative_object_key(self._config.derivative_prefix, job.image_id, size_name, fmt)
        return self._object_store.put_bytes(
            key, body, content_type_for(fmt), cache_control=DERIVATIVE_CACHE_CONTROL
        )

    def _ensure_current(self, job: ProcessingJob) -> None:
        current = self._repository.get(job.image_id)
        if current is None:
            raise NotFoundError(f"Image {job.image_id} was deleted")
        if current.source_key != job.source_key:
            raise _JobSuperseded(f"source changed to {current.source_key}")

    def _complete(self, job: ProcessingJob) -> ImageRecord:
        def finish(current: ImageRecord) -> ImageRecord:
            if current.source_key != job.source_key:
                raise _JobSuperseded(f"source changed to {current.source_key}")
            current.derivatives = dict(job.produced)
            current.exif = {**current.exif, **job.exif}
            current.dominant_colors = list(job.dominant_colors)
            if current.coordinates is None and job.coordinates is not None:
                current.coordinates = job.coordinates
            current.processing_status = ProcessingStatus.COMPLETE
            current.processing_error = None
            return current

        return self._repository.update(job.image_id, finish)

    def _handle_failure(self, job: ProcessingJob, error: Exception, log_context: LogContext) -> ProcessingJob:
        job.last_error = f"{type(error).__name__}: {error}"
        error_context = log_context.with_metadata(error=job.last_error)

        if job.attempt < job.max_attempts:
            delay = self._config.backoff_delay(job.attempt)
            job.state = JobState.QUEUED
            job.next_attempt_at = self._clock() + delay
            self._set_status(job, ProcessingStatus.QUEUED, None)
            self._logger.warning(
                f"Attempt {job.attempt}/{job.max_attempts} failed; retrying in {delay:.1f}s",
                error_context,
            )
            return job

        job.state = JobState.FAILED
        record = self._set_status(job, ProcessingStatus.FAILED, job.last_error)
        self._logger.error(
            f"Processing failed after {job.attempt} attempt(s)", error_context
        )
        if record is not None:
            self._notify(record.owner_id, "upload_failed", {"image_id": record.image_id, "error": job.last_error})
        return job

    def abandon(self, job: ProcessingJob) -> None:
        """Mark the record failed for a job whose lease ran out on its last attempt."""
        self._set_status(job, ProcessingStatus.FAILED, job.last_error or "processing abandoned")
        self._logger.error(
            "Processing abandoned after lease expiry",
            LogContext(correlation_id=job.job_id, operation="abandon", component="processing_worker").with_metadata(
                image_id=job.image_id, attempt=job.attempt
            ),
        )

    def _set_status(
        self, job: ProcessingJob, status: ProcessingStatus, error: Optional[str]
    ) -> Optional[ImageRecord]:
        def apply(current: ImageRecord) -> ImageRecord:
            if current.source_key != job.source_key:
                raise _JobSuperseded(f"source changed to {current.source_key}")
            current.processing_status = status
            current.processing_error = error
            return current

        try:
            return self._repository.update(job.image_id, apply)
        except (NotFoundError, _JobSuperseded):
            self._logger.debug(f"Skipped status write for image {job.image_id}; record gone or replaced")
            return None

    def _notify(self, owner_id: str, kind: str, payload: Dict[str, Any]) -> None:
        if self._notifications is None:
            return
        best_effort(kind, self._notifications.notify, owner_id, kind, payload)

    def _listings_changed(self) -> None:
        if self._invalidate_listings is not None:
            self._invalidate_listings()
