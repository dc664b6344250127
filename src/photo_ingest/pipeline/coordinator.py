"""Client-side upload coordinator: transfer, finalize, progress and batches."""

import mimetypes
import os
import queue
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from ..core.error_handling import BatchOperationContextManager, best_effort
from ..core.exceptions import (
    PhotoIngestError,
    StorageError,
    TransferTimeoutError,
    UploadCancelledError,
    ValidationError,
)
from ..core.logging_config import get_logger
from ..core.models import (
    BatchOutcome,
    IngestConfig,
    MetadataDraft,
    ProcessingStatus,
    ProgressEvent,
    UploadMode,
    UploadPhase,
    UploadResult,
)
from ..core.protocols import UploadTransport

ProgressCallback = Callable[[ProgressEvent], None]

# Share of the bar the transfer leg may fill in single-phase mode; the
# remainder is released once the server accepts the upload.
LEGACY_TRANSFER_CEILING = 85


@dataclass
class UploadFile:
    """Bytes of one local file plus what the server needs to know about it."""

    file_name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: str, content_type: Optional[str] = None) -> "UploadFile":
        guessed, _ = mimetypes.guess_type(path)
        with open(path, "rb") as f:
            data = f.read()
        return cls(
            file_name=os.path.basename(path),
            content_type=content_type or guessed or "application/octet-stream",
            data=data,
        )


class ProgressTracker:
    """Forwards progress events, clamped to [0, 100] and never decreasing."""

    def __init__(self, callback: Optional[ProgressCallback], upload_id: str = ""):
        self._callback = callback
        self.upload_id = upload_id
        self._last_percent = 0
        self._last_phase: Optional[UploadPhase] = None
        self.events: List[ProgressEvent] = []

    @property
    def percent(self) -> int:
        return self._last_percent

    def emit(self, phase: UploadPhase, percent: float, bytes_sent: int = 0, bytes_total: int = 0) -> None:
        value = max(self._last_percent, min(100, max(0, int(percent))))
        if self._last_phase == phase and value == self._last_percent and self.events:
            return
        self._last_percent = value
        self._last_phase = phase
        event = ProgressEvent(
            upload_id=self.upload_id,
            phase=phase,
            percent=value,
            bytes_sent=bytes_sent,
            bytes_total=bytes_total,
        )
        self.events.append(event)
        if self._callback is not None:
            best_effort("progress callback", self._callback, event)


class UploadCoordinator:
    """
    Drives uploads through a transport.

    Two-phase mode requests a presigned target, streams the bytes straight to
    the object store and then finalizes; single-phase (legacy) mode sends
    bytes and metadata in one server call. Every upload ends in an
    UploadResult; errors are reported there rather than raised.
    """

    def __init__(
        self,
        transport: UploadTransport,
        config: Optional[IngestConfig] = None,
        mode: UploadMode = UploadMode.TWO_PHASE,
        finalize_retries: int = 0,
    ):
        self._transport = transport
        self._config = config or IngestConfig()
        self._mode = mode
        self._finalize_retries = max(0, finalize_retries)
        self._logger = get_logger("photo-ingest.coordinator")
        self._finalize_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="finalize")

    def close(self) -> None:
        self._finalize_pool.shutdown(wait=False)

    def begin_upload(
        self,
        file: UploadFile,
        metadata_draft: MetadataDraft,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        mode: Optional[UploadMode] = None,
        transfer_timeout: Optional[float] = None,
    ) -> UploadResult:
        tracker = ProgressTracker(on_progress)
        mode = mode or self._mode
        timeout = transfer_timeout or self._config.transfer_timeout_seconds
        try:
            self._check_cancelled(cancel_event)
            if mode == UploadMode.LEGACY:
                return self._upload_single_phase(file, metadata_draft, tracker, cancel_event, timeout)
            return self._upload_two_phase(file, metadata_draft, tracker, cancel_event, timeout)
        except PhotoIngestError as e:
            return self._failed(tracker.upload_id, file, e)

    def iter_upload(
        self,
        file: UploadFile,
        metadata_draft: MetadataDraft,
        cancel_event: Optional[threading.Event] = None,
        mode: Optional[UploadMode] = None,
    ) -> Iterator[Union[ProgressEvent, UploadResult]]:
        """Yield ProgressEvents as they happen, then the final UploadResult."""
        events: "queue.Queue[Union[ProgressEvent, UploadResult]]" = queue.Queue()

        def run() -> None:
            events.put(
                self.begin_upload(
                    file, metadata_draft, on_progress=events.put, cancel_event=cancel_event, mode=mode
                )
            )

        thread = threading.Thread(target=run, name=f"upload-{file.file_name}", daemon=True)
        thread.start()
        while True:
            item = events.get()
            yield item
            if isinstance(item, UploadResult):
                break
        thread.join()

    def _upload_two_phase(
        self,
        file: UploadFile,
        draft: MetadataDraft,
        tracker: ProgressTracker,
        cancel_event: Optional[threading.Event],
        timeout: float,
    ) -> UploadResult:
        target = self._transport.request_target(file.content_type, file.file_name, file.size)
        tracker.upload_id = target.upload_id
        tracker.emit(UploadPhase.TRANSFER, 0, 0, file.size)

        chunks = self._chunks(file, tracker, cancel_event, timeout, ceiling=100)
        self._transport.transfer(target, chunks, timeout, size=file.size)
        tracker.emit(UploadPhase.TRANSFER, 100, file.size, file.size)
        self._logger.debug(f"Transfer of {target.upload_id} complete ({file.size} bytes)")

        self._check_cancelled(cancel_event)
        accepted = self._finalize_with_timeout(target.upload_id, draft)
        tracker.emit(UploadPhase.FINALIZE, 100, file.size, file.size)
        tracker.emit(UploadPhase.DONE, 100, file.size, file.size)
        return self._succeeded(target.upload_id, accepted)

    def _upload_single_phase(
        self,
        file: UploadFile,
        draft: MetadataDraft,
        tracker: ProgressTracker,
        cancel_event: Optional[threading.Event],
        timeout: float,
    ) -> UploadResult:
        if not file.content_type.lower().startswith("image/"):
            raise ValidationError(f"File must be an image, got '{file.content_type}'")
        tracker.emit(UploadPhase.TRANSFER, 0, 0, file.size)
        chunks = self._chunks(file, tracker, cancel_event, timeout, ceiling=LEGACY_TRANSFER_CEILING)
        accepted = self._transport.legacy_upload(
            file.file_name, file.content_type, chunks, draft, timeout
        )
        tracker.emit(UploadPhase.DONE, 100, file.size, file.size)
        return self._succeeded("", accepted)

    def _chunks(
        self,
        file: UploadFile,
        tracker: ProgressTracker,
        cancel_event: Optional[threading.Event],
        timeout: float,
        ceiling: int,
    ) -> Iterator[bytes]:
        """Split the file into chunks, reporting progress and enforcing cancel/deadline."""
        deadline = time.monotonic() + timeout
        view = memoryview(file.data)
        total = file.size
        sent = 0
        chunk_size = self._config.chunk_size
        while sent < total:
            self._check_cancelled(cancel_event)
            if time.monotonic() > deadline:
                raise TransferTimeoutError(
                    f"Transfer exceeded {timeout}s after {sent} of {total} bytes",
                    phase="transfer",
                    timeout=timeout,
                )
            chunk = bytes(view[sent : sent + chunk_size])
            yield chunk
            sent += len(chunk)
            tracker.emit(UploadPhase.TRANSFER, sent * ceiling // total, sent, total)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise UploadCancelledError("Upload cancelled by the client")

    def _finalize_with_timeout(self, upload_id: str, draft: MetadataDraft) -> Dict[str, Any]:
        timeout = self._config.finalize_timeout_seconds
        attempt = 0
        while True:
            attempt += 1
            future = self._finalize_pool.submit(self._transport.finalize, upload_id, draft, timeout)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError:
                error: PhotoIngestError = TransferTimeoutError(
                    f"Finalize of {upload_id} exceeded {timeout}s", phase="finalize", timeout=timeout
                )
            except (TransferTimeoutError, StorageError) as e:
                error = e
            if attempt > self._finalize_retries:
                raise error
            self._logger.warning(
                f"Finalize of {upload_id} failed (attempt {attempt}): {error}; retrying"
            )

    def _succeeded(self, upload_id: str, accepted: Dict[str, Any]) -> UploadResult:
        status = accepted.get("processing_status")
        return UploadResult(
            success=True,
            upload_id=upload_id,
            image_id=accepted.get("image_id"),
            processing_status=ProcessingStatus(status) if status else None,
        )

    def _failed(self, upload_id: str, file: UploadFile, error: PhotoIngestError) -> UploadResult:
        cancelled = isinstance(error, UploadCancelledError)
        if cancelled:
            self._logger.info(f"Upload of {file.file_name} cancelled")
        else:
            self._logger.warning(f"Upload of {file.file_name} failed ({error.error_type}): {error}")
        return UploadResult(
            success=False,
            upload_id=upload_id,
            error=str(error),
            error_type=error.error_type,
            cancelled=cancelled,
        )

    def upload_batch(
        self,
        items: Iterable[Tuple[UploadFile, MetadataDraft]],
        batch_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchOutcome:
        """
        Upload files one after another, then report the batch summary.

        The summary is sent best-effort; its outcome only sets
        `BatchOutcome.notified` and never changes per-item results.
        """
        batch_id = batch_id or uuid.uuid4().hex
        outcome = BatchOutcome(batch_id=batch_id)
        with BatchOperationContextManager(f"Batch upload {batch_id}") as batch:
            for file, draft in items:
                result = self.begin_upload(file, draft, on_progress=on_progress, cancel_event=cancel_event)
                outcome.results.append(result)
                if not result.success:
                    batch.add_error(result.error, file.file_name)

        report = best_effort(
            "bulk upload notification",
            self._transport.notify_batch,
            outcome.success_count,
            len(outcome.results),
            outcome.failed_count,
            batch_id=batch_id,
            logger=self._logger,
        )
        outcome.notified = bool(report.ok and report.value)
        return outcome

    def replace_batch(
        self,
        replacements: Iterable[Tuple[str, UploadFile]],
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchOutcome:
        """
        Replace the source file of existing images.

        All transfers share one deadline of `bulk_transfer_timeout_seconds`;
        items still pending when it passes fail with a timeout.
        """
        bulk_timeout = self._config.bulk_transfer_timeout_seconds
        deadline = time.monotonic() + bulk_timeout
        outcome = BatchOutcome(batch_id=uuid.uuid4().hex)
        with BatchOperationContextManager("Bulk replace") as batch:
            for image_id, file in replacements:
                tracker = ProgressTracker(None)
                try:
                    self._check_cancelled(cancel_event)
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TransferTimeoutError(
                            f"Bulk replace exceeded {bulk_timeout}s", phase="transfer", timeout=bulk_timeout
                        )
                    target = self._transport.request_target(file.content_type, file.file_name, file.size)
                    tracker.upload_id = target.upload_id
                    chunks = self._chunks(file, tracker, cancel_event, remaining, ceiling=100)
                    self._transport.transfer(target, chunks, remaining, size=file.size)
                    accepted = self._transport.replace(
                        image_id, target.upload_id, self._config.finalize_timeout_seconds
                    )
                    outcome.results.append(self._succeeded(target.upload_id, accepted))
                except PhotoIngestError as e:
                    outcome.results.append(self._failed(tracker.upload_id, file, e))
                    batch.add_error(str(e), image_id)
        return outcome
