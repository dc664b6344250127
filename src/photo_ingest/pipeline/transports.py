"""Client-side transports used by the upload coordinator."""

import json
from typing import Any, Dict, Iterable, Optional, Type

import httpx

from ..core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PhotoIngestError,
    ProcessingError,
    StorageError,
    TransferTimeoutError,
    ValidationError,
)
from ..core.models import MetadataDraft, TransferTarget
from ..core.protocols import UploadTransport
from ..storage.object_store import ObjectStoreClient
from .finalize import FinalizeHandler, SinglePhaseUploader
from .issuer import PresignedTransferIssuer
from .notifier import BatchNotifier

OWNER_HEADER = "X-Owner-Id"

_ERRORS_BY_TYPE: Dict[str, Type[PhotoIngestError]] = {
    cls.error_type: cls
    for cls in (
        ValidationError,
        StorageError,
        ConflictError,
        ProcessingError,
        NotFoundError,
        PermissionDeniedError,
    )
}


def draft_payload(draft: MetadataDraft) -> Dict[str, Any]:
    """camelCase request fields for a metadata draft."""
    return {
        "title": draft.title,
        "category": draft.category,
        "location": draft.location,
        "coordinates": draft.coordinates,
        "tags": draft.tags,
        "cameraModel": draft.camera_model,
    }


def error_from_response(response: httpx.Response, phase: str = "") -> PhotoIngestError:
    """Rebuild the pipeline exception an API error response describes."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("error") or f"HTTP {response.status_code}"
    error_type = body.get("errorType", "")
    if error_type == TransferTimeoutError.error_type or response.status_code == 504:
        return TransferTimeoutError(message, phase=phase or "finalize")
    return _ERRORS_BY_TYPE.get(error_type, StorageError)(message)


def _result_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "image_id": body.get("imageId"),
        "processing_status": body.get("processingStatus"),
    }


class InProcessTransport(UploadTransport):
    """Calls the server-side components directly, on behalf of one owner."""

    def __init__(
        self,
        owner_id: str,
        issuer: PresignedTransferIssuer,
        object_store: ObjectStoreClient,
        finalize_handler: FinalizeHandler,
        notifier: BatchNotifier,
    ):
        self._owner_id = owner_id
        self._issuer = issuer
        self._object_store = object_store
        self._finalize = finalize_handler
        self._notifier = notifier
        self._single_phase = SinglePhaseUploader(issuer, object_store, finalize_handler)

    def request_target(self, content_type: str, file_name: str, file_size: int) -> TransferTarget:
        return self._issuer.issue(self._owner_id, content_type, file_name, file_size)

    def transfer(
        self,
        target: TransferTarget,
        chunks: Iterable[bytes],
        timeout: float,
        size: Optional[int] = None,
    ) -> None:
        body = b"".join(chunks)
        self._object_store.put_bytes(target.object_key, body, target.headers["Content-Type"])

    def finalize(self, upload_id: str, draft: MetadataDraft, timeout: float) -> Dict[str, Any]:
        result = self._finalize.finalize(upload_id, self._owner_id, draft)
        return {
            "image_id": result.record.image_id,
            "processing_status": result.record.processing_status.value,
        }

    def legacy_upload(
        self,
        file_name: str,
        content_type: str,
        chunks: Iterable[bytes],
        draft: MetadataDraft,
        timeout: float,
    ) -> Dict[str, Any]:
        data = b"".join(chunks)
        result = self._single_phase.upload(self._owner_id, file_name, content_type, data, draft)
        return {
            "image_id": result.record.image_id,
            "processing_status": result.record.processing_status.value,
        }

    def replace(self, image_id: str, upload_id: str, timeout: float) -> Dict[str, Any]:
        record = self._finalize.replace_source(image_id, self._owner_id, upload_id)
        return {"image_id": record.image_id, "processing_status": record.processing_status.value}

    def notify_batch(
        self,
        success_count: int,
        total_count: int,
        failed_count: int,
        batch_id: Optional[str] = None,
    ) -> bool:
        result = self._notifier.report_batch(
            success_count, total_count, failed_count, batch_id=batch_id, owner_id=self._owner_id
        )
        return result.ok


class HttpTransport(UploadTransport):
    """
    Talks to the HTTP API with httpx.

    `api_client` carries the API base URL; `storage_client` performs the
    direct write to the presigned URL (defaults to a plain client).
    """

    def __init__(
        self,
        api_client: httpx.Client,
        owner_id: str,
        storage_client: Optional[httpx.Client] = None,
    ):
        self._api = api_client
        self._owner_id = owner_id
        self._storage = storage_client or httpx.Client()

    def _headers(self) -> Dict[str, str]:
        return {OWNER_HEADER: self._owner_id}

    def _call(
        self,
        method: str,
        path: str,
        phase: str,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = self._api.request(
                method, path, headers=self._headers(), timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransferTimeoutError(f"{method} {path} timed out", phase=phase, timeout=timeout or 0.0) from e
        except httpx.HTTPError as e:
            raise StorageError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400:
            raise error_from_response(response, phase)
        return response

    def request_target(self, content_type: str, file_name: str, file_size: int) -> TransferTarget:
        response = self._call(
            "POST",
            "/pre-upload",
            "transfer",
            json={"fileName": file_name, "fileType": content_type, "fileSize": file_size},
        )
        body = response.json()
        upload_target = body["uploadTarget"]
        return TransferTarget(
            upload_id=body["uploadId"],
            object_key=body["objectKey"],
            upload_url=upload_target["url"],
            method=upload_target.get("method", "PUT"),
            headers=upload_target.get("headers", {}),
            expires_at=body["expiresAt"],
            expires_in=body["expiresIn"],
            max_file_size=body["maxFileSize"],
        )

    def transfer(
        self,
        target: TransferTarget,
        chunks: Iterable[bytes],
        timeout: float,
        size: Optional[int] = None,
    ) -> None:
        headers = dict(target.headers)
        if size is not None:
            headers["Content-Length"] = str(size)
        try:
            response = self._storage.request(
                target.method,
                target.upload_url,
                content=chunks,
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TransferTimeoutError(
                f"Transfer of {target.upload_id} timed out", phase="transfer", timeout=timeout
            ) from e
        except httpx.HTTPError as e:
            raise StorageError(f"Transfer of {target.upload_id} failed: {e}") from e
        if response.status_code >= 300:
            raise StorageError(
                f"Object store rejected transfer of {target.upload_id} (HTTP {response.status_code})"
            )

    def finalize(self, upload_id: str, draft: MetadataDraft, timeout: float) -> Dict[str, Any]:
        response = self._call(
            "POST",
            "/finalize",
            "finalize",
            timeout=timeout,
            json={"uploadId": upload_id, **draft_payload(draft)},
        )
        return _result_fields(response.json())

    def legacy_upload(
        self,
        file_name: str,
        content_type: str,
        chunks: Iterable[bytes],
        draft: MetadataDraft,
        timeout: float,
    ) -> Dict[str, Any]:
        data = b"".join(chunks)
        form = {
            key: value if isinstance(value, str) else json.dumps(value)
            for key, value in draft_payload(draft).items()
            if value is not None
        }
        response = self._call(
            "POST",
            "/upload",
            "transfer",
            timeout=timeout,
            data=form,
            files={"image": (file_name or "upload", data, content_type)},
        )
        return _result_fields(response.json())

    def replace(self, image_id: str, upload_id: str, timeout: float) -> Dict[str, Any]:
        response = self._call(
            "PATCH",
            "/batch/replace",
            "finalize",
            timeout=timeout,
            json={"items": [{"imageId": image_id, "uploadId": upload_id}]},
        )
        item = response.json()["results"][0]
        if not item.get("success"):
            error_type = item.get("errorType", "")
            raise _ERRORS_BY_TYPE.get(error_type, StorageError)(item.get("error", "replace failed"))
        return _result_fields(item)

    def notify_batch(
        self,
        success_count: int,
        total_count: int,
        failed_count: int,
        batch_id: Optional[str] = None,
    ) -> bool:
        response = self._call(
            "POST",
            "/bulk-upload-notification",
            "notify",
            json={
                "successCount": success_count,
                "totalCount": total_count,
                "failedCount": failed_count,
                "batchId": batch_id,
            },
        )
        return bool(response.json().get("notified"))
