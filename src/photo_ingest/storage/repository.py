"""Durable image records with optimistic concurrency."""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..core.exceptions import ConflictError, NotFoundError
from ..core.logging_config import get_logger
from ..core.models import ImageRecord

Mutator = Callable[[ImageRecord], Optional[ImageRecord]]


class ImageRepository:
    """
    In-memory image document store.

    Every write is version-checked: `replace` only succeeds when the caller
    saw the latest version, and bumps it. `update` wraps that in a
    read-modify-write loop so racing writers re-apply their change on top of
    each other instead of overwriting.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._records: Dict[str, ImageRecord] = {}
        self._by_upload: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._logger = get_logger("photo-ingest.repository")

    def create_if_absent(self, record: ImageRecord) -> Tuple[ImageRecord, bool]:
        """
        Insert a record unless one already exists for its upload id.

        Returns `(record, created)`; concurrent duplicates observe the first
        writer's record with `created=False`.
        """
        with self._lock:
            existing_id = self._by_upload.get(record.upload_id)
            if existing_id is not None:
                return self._records[existing_id].model_copy(deep=True), False
            if record.image_id in self._records:
                raise ConflictError(f"Image {record.image_id} already exists")
            stored = record.model_copy(deep=True)
            self._records[stored.image_id] = stored
            self._by_upload[stored.upload_id] = stored.image_id
            return stored.model_copy(deep=True), True

    def get(self, image_id: str) -> Optional[ImageRecord]:
        with self._lock:
            record = self._records.get(image_id)
            return record.model_copy(deep=True) if record else None

    def require(self, image_id: str) -> ImageRecord:
        record = self.get(image_id)
        if record is None:
            raise NotFoundError(f"Image {image_id} not found")
        return record

    def get_by_upload_id(self, upload_id: str) -> Optional[ImageRecord]:
        with self._lock:
            image_id = self._by_upload.get(upload_id)
            return self.get(image_id) if image_id else None

    def replace(self, record: ImageRecord, expected_version: int) -> ImageRecord:
        """Store `record` if the stored version still equals `expected_version`."""
        with self._lock:
            current = self._records.get(record.image_id)
            if current is None:
                raise NotFoundError(f"Image {record.image_id} not found")
            if current.version != expected_version:
                raise ConflictError(
                    f"Image {record.image_id} changed (expected version "
                    f"{expected_version}, found {current.version})",
                    current=current.model_copy(deep=True),
                )
            stored = record.model_copy(
                deep=True,
                update={"version": expected_version + 1, "updated_at": self._clock()},
            )
            self._records[stored.image_id] = stored
            return stored.model_copy(deep=True)

    def update(self, image_id: str, mutator: Mutator, max_retries: int = 10) -> ImageRecord:
        """
        Apply `mutator` to the latest record and store it, retrying on conflict.

        The mutator receives a private copy and returns the record to store
        (or None to store the mutated copy). It may be called more than once.
        """
        for attempt in range(1, max_retries + 1):
            current = self.require(image_id)
            expected_version = current.version
            changed = mutator(current) or current
            try:
                return self.replace(changed, expected_version)
            except ConflictError:
                self._logger.debug(
                    f"Version conflict on image {image_id}, retry {attempt}/{max_retries}"
                )
        raise ConflictError(f"Image {image_id} kept changing; gave up after {max_retries} retries")

    def delete(self, image_id: str) -> Optional[ImageRecord]:
        with self._lock:
            record = self._records.pop(image_id, None)
            if record is not None:
                self._by_upload.pop(record.upload_id, None)
            return record

    def query(
        self,
        predicate: Callable[[ImageRecord], bool],
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[ImageRecord], int]:
        """Matching records newest first, plus the total match count."""
        with self._lock:
            matches = [r for r in self._records.values() if predicate(r)]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [r.model_copy(deep=True) for r in matches[offset:end]], len(matches)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
