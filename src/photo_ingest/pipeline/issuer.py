"""Presigned-transfer issuance: upload ids, object keys and write URLs."""

import re
import secrets
import time
from typing import Callable, Optional

from ..core.exceptions import ConflictError, ValidationError
from ..core.image_utils import file_extension, raw_object_key
from ..core.models import IngestConfig, TransferTarget, UploadSession
from ..core.observability import LogContext
from ..core.protocols import LoggerProtocol
from ..storage.object_store import ObjectStoreClient
from ..storage.session_store import UploadSessionStore

UPLOAD_ID_PATTERN = re.compile(r"^image-\d+-[a-f0-9]{8}$")


def generate_upload_id(now: float) -> str:
    """`image-<epoch ms>-<8 random hex chars>`."""
    return f"image-{int(now * 1000)}-{secrets.token_hex(4)}"


class PresignedTransferIssuer:
    """Issues write targets and records the matching pending session."""

    def __init__(
        self,
        object_store: ObjectStoreClient,
        session_store: UploadSessionStore,
        config: IngestConfig,
        logger: LoggerProtocol,
        clock: Callable[[], float] = time.time,
    ):
        self._object_store = object_store
        self._sessions = session_store
        self._config = config
        self._logger = logger
        self._clock = clock

    def issue(
        self,
        owner_id: str,
        content_type: str,
        file_name: str = "",
        file_size: Optional[int] = None,
    ) -> TransferTarget:
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        content_type = (content_type or "").strip().lower()
        if not content_type.startswith("image/"):
            raise ValidationError(f"File must be an image, got '{content_type or 'unknown'}'")
        if file_size is not None:
            try:
                size = int(file_size)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid file size: {file_size!r}")
            if size <= 0 or size > self._config.max_file_size:
                raise ValidationError(
                    f"File size must be between 1 byte and {self._config.max_file_size} bytes"
                )

        extension = file_extension(file_name, content_type)
        session = self._record_session(owner_id, content_type, extension)
        url = self._object_store.presign_put(
            session.object_key, content_type, self._config.presign_expires_seconds
        )

        self._logger.info(
            "Issued transfer target",
            LogContext(operation="issue", component="issuer", owner_id=owner_id).with_metadata(
                upload_id=session.upload_id, object_key=session.object_key
            ),
        )
        return TransferTarget(
            upload_id=session.upload_id,
            object_key=session.object_key,
            upload_url=url,
            method="PUT",
            headers={"Content-Type": content_type},
            expires_at=session.expires_at,
            expires_in=self._config.presign_expires_seconds,
            max_file_size=self._config.max_file_size,
        )

    def _record_session(self, owner_id: str, content_type: str, extension: str) -> UploadSession:
        last_error: Optional[ConflictError] = None
        for _ in range(3):
            now = self._clock()
            upload_id = generate_upload_id(now)
            session = UploadSession(
                upload_id=upload_id,
                object_key=raw_object_key(self._config.raw_prefix, owner_id, upload_id, extension),
                owner_id=owner_id,
                content_type=content_type,
                issued_at=now,
                expires_at=now + self._config.session_ttl_seconds,
            )
            try:
                self._sessions.put(session)
                return session
            except ConflictError as e:
                last_error = e
        raise ConflictError(f"Could not allocate a unique upload id: {last_error}")
