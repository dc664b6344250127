"""HTTP boundary of the ingestion pipeline (FastAPI)."""

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .core.error_handling import BatchOperationContextManager
from .core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PhotoIngestError,
    StorageError,
    TransferTimeoutError,
    ValidationError,
)
from .core.factories import IngestionPipeline, SessionSweeper
from .core.logging_config import get_logger
from .core.models import ImageRecord, MetadataDraft, Page

logger = get_logger("photo-ingest.api")

STATUS_BY_ERROR = {
    ValidationError: 400,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    ConflictError: 409,
    StorageError: 502,
    TransferTimeoutError: 504,
}
# Paths where a missing or unreadable object is the client's fault.
CLIENT_STORAGE_PATHS = ("/finalize",)
MAX_REPLACE_ITEMS = 100
DOWNLOAD_CHUNK_SIZE = 64 * 1024


# ---------- Request models ----------
class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PreUploadRequest(CamelModel):
    file_name: str = Field(default="", alias="fileName")
    file_type: str = Field(alias="fileType")
    file_size: Optional[int] = Field(default=None, alias="fileSize")


class FinalizeRequest(CamelModel):
    upload_id: str = Field(alias="uploadId")
    title: str = ""
    category: str = ""
    location: Optional[str] = None
    coordinates: Optional[Any] = None
    tags: Optional[Any] = None
    camera_model: Optional[str] = Field(default=None, alias="cameraModel")

    def draft(self) -> MetadataDraft:
        return MetadataDraft(
            title=self.title,
            category=self.category,
            location=self.location,
            coordinates=self.coordinates,
            tags=self.tags,
            camera_model=self.camera_model,
        )


class ReplaceItem(CamelModel):
    image_id: str = Field(alias="imageId")
    upload_id: str = Field(alias="uploadId")


class BatchReplaceRequest(CamelModel):
    items: List[ReplaceItem]


class BulkNotificationRequest(CamelModel):
    success_count: int = Field(alias="successCount")
    total_count: int = Field(alias="totalCount")
    failed_count: int = Field(default=0, alias="failedCount")
    batch_id: Optional[str] = Field(default=None, alias="batchId")


class EditImageRequest(CamelModel):
    title: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    tags: Optional[Any] = None
    coordinates: Optional[Any] = None


# ---------- Response shaping ----------
def _derivative_url(record: ImageRecord, size_name: str) -> Optional[str]:
    for fmt in ("webp", "jpeg", "avif", "png"):
        url = record.derivatives.get(f"{size_name}.{fmt}")
        if url:
            return url
    return None


def image_payload(record: ImageRecord) -> Dict[str, Any]:
    return {
        "imageId": record.image_id,
        "ownerId": record.owner_id,
        "uploadId": record.upload_id,
        "title": record.title,
        "category": record.category_ref,
        "location": record.location,
        "coordinates": record.coordinates.model_dump() if record.coordinates else None,
        "tags": record.tags,
        "exif": record.exif,
        "dominantColors": record.dominant_colors,
        "derivatives": record.derivatives,
        "thumbnailUrl": _derivative_url(record, "thumbnail"),
        "smallUrl": _derivative_url(record, "small"),
        "regularUrl": _derivative_url(record, "regular"),
        "imageUrl": _derivative_url(record, "original"),
        "processingStatus": record.processing_status.value,
        "processingError": record.processing_error,
        "moderationStatus": record.moderation_status.value,
        "version": record.version,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }


def page_payload(page: Page) -> Dict[str, Any]:
    return {
        "items": [image_payload(item) for item in page.items],
        "pagination": page.pagination.model_dump(),
    }


def _error_body(exc: PhotoIngestError) -> Dict[str, str]:
    return {"error": str(exc), "errorType": exc.error_type}


def status_for(exc: PhotoIngestError, path: str = "") -> int:
    if isinstance(exc, StorageError) and path in CLIENT_STORAGE_PATHS:
        return 400
    for error_class, status in STATUS_BY_ERROR.items():
        if isinstance(exc, error_class):
            return status
    return 500


# ---------- Dependencies ----------
def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def require_owner(x_owner_id: Optional[str] = Header(default=None)) -> str:
    if not x_owner_id or not x_owner_id.strip():
        raise PermissionDeniedError("X-Owner-Id header is required")
    return x_owner_id.strip()


def optional_viewer(x_owner_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_owner_id.strip() if x_owner_id and x_owner_id.strip() else None


router = APIRouter()


# ---------- Upload endpoints ----------
@router.post("/pre-upload")
def pre_upload(
    body: PreUploadRequest,
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    target = pipeline.issuer.issue(owner_id, body.file_type, body.file_name, body.file_size)
    return {
        "uploadId": target.upload_id,
        "objectKey": target.object_key,
        "uploadTarget": {
            "url": target.upload_url,
            "method": target.method,
            "headers": target.headers,
        },
        "expiresIn": target.expires_in,
        "expiresAt": target.expires_at,
        "maxFileSize": target.max_file_size,
    }


@router.post("/finalize")
def finalize(
    body: FinalizeRequest,
    response: Response,
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    result = pipeline.finalizer.finalize(body.upload_id, owner_id, body.draft())
    response.status_code = 201 if result.created else 200
    return {
        "imageId": result.record.image_id,
        "processingStatus": result.record.processing_status.value,
    }


@router.post("/upload", status_code=201)
def legacy_upload(
    image: UploadFile = File(...),
    title: str = Form(""),
    category: str = Form(""),
    location: Optional[str] = Form(None),
    coordinates: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    camera_model: Optional[str] = Form(None, alias="cameraModel"),
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    data = image.file.read(pipeline.config.max_file_size + 1)
    if len(data) > pipeline.config.max_file_size:
        raise ValidationError(f"File exceeds the {pipeline.config.max_file_size} byte limit")
    draft = MetadataDraft(
        title=title,
        category=category,
        location=location,
        coordinates=coordinates,
        tags=tags,
        camera_model=camera_model,
    )
    result = pipeline.uploader.upload(
        owner_id,
        image.filename or "",
        image.content_type or "application/octet-stream",
        data,
        draft,
    )
    return {
        "imageId": result.record.image_id,
        "processingStatus": result.record.processing_status.value,
    }


@router.patch("/batch/replace")
def batch_replace(
    body: BatchReplaceRequest,
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    if not body.items:
        raise ValidationError("No replacement items supplied")
    if len(body.items) > MAX_REPLACE_ITEMS:
        raise ValidationError(f"At most {MAX_REPLACE_ITEMS} images can be replaced at once")

    results: List[Dict[str, Any]] = []
    with BatchOperationContextManager("Batch replace") as batch:
        for item in body.items:
            try:
                record = pipeline.finalizer.replace_source(item.image_id, owner_id, item.upload_id)
            except PhotoIngestError as e:
                batch.add_error(str(e), item.image_id)
                results.append(
                    {"imageId": item.image_id, "uploadId": item.upload_id, "success": False, **_error_body(e)}
                )
                continue
            results.append(
                {
                    "imageId": record.image_id,
                    "uploadId": item.upload_id,
                    "success": True,
                    "processingStatus": record.processing_status.value,
                }
            )
    succeeded = sum(1 for result in results if result["success"])
    return {"results": results, "successCount": succeeded, "failedCount": len(results) - succeeded}


@router.post("/bulk-upload-notification", status_code=202)
def bulk_upload_notification(
    body: BulkNotificationRequest,
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    result = pipeline.notifier.report_batch(
        body.success_count,
        body.total_count,
        body.failed_count,
        batch_id=body.batch_id,
        owner_id=owner_id,
    )
    return {"accepted": True, "notified": result.ok}


# ---------- Catalog endpoints ----------
@router.get("/images")
def list_images(
    page: int = Query(1),
    limit: int = Query(20),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    return page_payload(pipeline.catalog.list_public(page, limit))


@router.get("/images/mine")
def list_my_images(
    page: int = Query(1),
    limit: int = Query(20),
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    return page_payload(pipeline.catalog.list_for_owner(owner_id, page, limit))


@router.get("/images/{image_id}")
def get_image(
    image_id: str,
    viewer_id: Optional[str] = Depends(optional_viewer),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    return image_payload(pipeline.catalog.get_image(image_id, viewer_id))


@router.patch("/images/{image_id}")
def edit_image(
    image_id: str,
    body: EditImageRequest,
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    record = pipeline.catalog.edit_metadata(
        image_id,
        owner_id,
        title=body.title,
        tags=body.tags,
        location=body.location,
        category=body.category,
        coordinates=body.coordinates,
    )
    return image_payload(record)


@router.delete("/images/{image_id}")
def delete_image(
    image_id: str,
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    pipeline.catalog.delete_image(image_id, owner_id)
    return {"deleted": True, "imageId": image_id}


@router.post("/images/{image_id}/reprocess", status_code=202)
def reprocess_image(
    image_id: str,
    owner_id: str = Depends(require_owner),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    record = pipeline.finalizer.reprocess(image_id, owner_id)
    return {"imageId": record.image_id, "processingStatus": record.processing_status.value}


@router.get("/images/{image_id}/download")
def download_image(
    image_id: str,
    size: str = Query("original"),
    viewer_id: Optional[str] = Depends(optional_viewer),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    target = pipeline.catalog.resolve_download(image_id, size, viewer_id)
    stream = pipeline.object_store.open_stream(target.object_key)
    body = stream["body"]
    extension = target.object_key.rsplit(".", 1)[-1]
    headers = {
        "Content-Disposition": f'attachment; filename="{image_id}-{size}.{extension}"',
        "Cache-Control": "private, max-age=3600",
    }
    if stream["size"] is not None:
        headers["Content-Length"] = str(stream["size"])
    return StreamingResponse(
        iter(lambda: body.read(DOWNLOAD_CHUNK_SIZE), b""),
        media_type=target.content_type,
        headers=headers,
    )


@router.get("/health")
def health(pipeline: IngestionPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return {"status": "ok", "version": __version__, "queue": pipeline.queue.stats()}


# ---------- App ----------
def create_app(
    pipeline: IngestionPipeline,
    start_workers: bool = False,
    sweep_interval: Optional[float] = None,
    delete_orphans: bool = False,
) -> FastAPI:
    """
    Build the API around an already wired pipeline.

    With `start_workers` the processing pool runs for the lifetime of the app;
    with `sweep_interval` abandoned upload sessions are expired on that period.
    """
    sweeper = SessionSweeper(pipeline, sweep_interval, delete_orphans) if sweep_interval else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_workers:
            pipeline.start_workers()
        if sweeper is not None:
            sweeper.start()
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.stop(timeout=5)
            if start_workers:
                pipeline.stop_workers(timeout=30)

    app = FastAPI(title="photo-ingest", version=__version__, lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.sweeper = sweeper

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        latency_ms = round((time.time() - start) * 1000, 2)
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)"
        )
        return response

    @app.exception_handler(PhotoIngestError)
    def pipeline_error_handler(request: Request, exc: PhotoIngestError) -> JSONResponse:
        status = status_for(exc, request.url.path)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(_error_body(exc), status_code=status)

    @app.exception_handler(RequestValidationError)
    def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": str(exc.errors()), "errorType": ValidationError.error_type},
            status_code=400,
        )

    app.include_router(router)
    return app
