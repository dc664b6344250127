"""Image catalog: listings, metadata edits, deletion and downloads."""

import math
from typing import Any, Dict, List, Optional

from ..core.error_handling import best_effort
from ..core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from ..core.image_utils import FORMATS, validate_coordinates
from ..core.models import (
    Coordinates,
    DownloadTarget,
    ImageRecord,
    IngestConfig,
    Page,
    Pagination,
    variant_key,
)
from ..core.observability import LogContext
from ..core.protocols import CategoryResolver, LoggerProtocol
from ..storage.cache import TTLCache
from ..storage.object_store import ObjectStoreClient
from ..storage.repository import ImageRepository
from .job_queue import JobQueue
from .validation import normalize_location, normalize_tags, resolve_category, validate_title

PUBLIC_LISTING_PREFIX = "public:"
MAX_PAGE_SIZE = 100

# Requested download size -> derivative sizes to try, best match first.
DOWNLOAD_SIZES: Dict[str, List[str]] = {
    "thumbnail": ["thumbnail", "small", "regular", "original"],
    "small": ["small", "regular", "original"],
    "medium": ["regular", "small", "original"],
    "regular": ["regular", "small", "original"],
    "large": ["original", "regular"],
    "original": ["original", "regular"],
}
PREFERRED_FORMATS = ["webp", "jpeg", "avif", "png"]


def _page_bounds(page: int, limit: int) -> Pagination:
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return Pagination(page=page, limit=limit)


def build_page(items: List[Any], page: int, limit: int, total: int) -> Page:
    return Page(
        items=items,
        pagination=Pagination(
            page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0
        ),
    )


def normalize_page(payload: Any, default_limit: int = 20) -> Page:
    """
    Normalize a listing payload into a Page.

    Accepts a bare list, or a mapping holding `items` (or `images`) and an
    optional `pagination` block; missing pagination is derived from the items.
    """
    if payload is None:
        return build_page([], 1, default_limit, 0)
    if isinstance(payload, Page):
        return payload
    if isinstance(payload, (list, tuple)):
        items = list(payload)
        return build_page(items, 1, max(len(items), 1), len(items))
    if not isinstance(payload, dict):
        raise ValidationError(f"Unrecognized listing payload: {type(payload).__name__}")

    items = payload.get("items")
    if items is None:
        items = payload.get("images", [])
    items = list(items)
    pagination = payload.get("pagination") or {}
    limit = int(pagination.get("limit") or max(len(items), default_limit))
    total = int(pagination.get("total", len(items)))
    page = int(pagination.get("page") or 1)
    result = build_page(items, page, limit, total)
    if "pages" in pagination:
        result.pagination.pages = int(pagination["pages"])
    return result


class ImageCatalog:
    """
    Read and edit side of the image records.

    Owns the TTL cache for the public listing; other components signal
    changes through `invalidate_listings`.
    """

    def __init__(
        self,
        repository: ImageRepository,
        object_store: ObjectStoreClient,
        job_queue: JobQueue,
        config: IngestConfig,
        categories: CategoryResolver,
        logger: LoggerProtocol,
        cache: Optional[TTLCache] = None,
    ):
        self._repository = repository
        self._object_store = object_store
        self._queue = job_queue
        self._config = config
        self._categories = categories
        self._logger = logger
        self._cache = cache if cache is not None else TTLCache(config.listing_cache_ttl_seconds)

    @property
    def cache(self) -> TTLCache:
        return self._cache

    def invalidate_listings(self) -> None:
        self._cache.invalidate(PUBLIC_LISTING_PREFIX)

    def list_public(self, page: int = 1, limit: int = 20) -> Page:
        """Processed, approved images, newest first."""
        bounds = _page_bounds(page, limit)
        key = f"{PUBLIC_LISTING_PREFIX}{bounds.page}:{bounds.limit}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached.model_copy(deep=True)

        generation = self._cache.generation
        items, total = self._repository.query(
            lambda record: record.publicly_listable,
            offset=(bounds.page - 1) * bounds.limit,
            limit=bounds.limit,
        )
        result = build_page(items, bounds.page, bounds.limit, total)
        self._cache.put(key, result.model_copy(deep=True), generation=generation)
        return result

    def list_for_owner(self, owner_id: str, page: int = 1, limit: int = 20) -> Page:
        """Every image of an owner, whatever its processing or moderation state."""
        bounds = _page_bounds(page, limit)
        items, total = self._repository.query(
            lambda record: record.owner_id == owner_id,
            offset=(bounds.page - 1) * bounds.limit,
            limit=bounds.limit,
        )
        return build_page(items, bounds.page, bounds.limit, total)

    def get_image(self, image_id: str, viewer_id: Optional[str] = None) -> ImageRecord:
        record = self._repository.get(image_id)
        if record is None:
            raise NotFoundError(f"Image {image_id} not found")
        if record.owner_id != viewer_id and not record.publicly_listable:
            raise NotFoundError(f"Image {image_id} not found")
        return record

    def _owned(self, image_id: str, owner_id: str) -> ImageRecord:
        record = self._repository.require(image_id)
        if record.owner_id != owner_id:
            raise PermissionDeniedError(f"Image {image_id} is not owned by {owner_id}")
        return record

    def edit_metadata(
        self,
        image_id: str,
        owner_id: str,
        title: Optional[str] = None,
        tags: Any = None,
        location: Optional[str] = None,
        category: Optional[str] = None,
        coordinates: Any = None,
    ) -> ImageRecord:
        """
        Apply an owner's metadata edit.

        Values are validated once, then applied through the repository's
        read-modify-write loop so a concurrent worker write is never lost.
        """
        self._owned(image_id, owner_id)

        changes: Dict[str, Any] = {}
        if title is not None:
            changes["title"] = validate_title(title)
        if tags is not None:
            changes["tags"] = normalize_tags(tags)
        if location is not None:
            changes["location"] = normalize_location(location)
        if category is not None:
            changes["category_ref"] = resolve_category(category, self._categories)
        if coordinates is not None:
            valid = validate_coordinates(coordinates)
            if valid is None:
                raise ValidationError("Coordinates are out of range")
            changes["coordinates"] = Coordinates(**valid)
        if not changes:
            raise ValidationError("No metadata changes supplied")

        def apply(current: ImageRecord) -> ImageRecord:
            for field_name, value in changes.items():
                setattr(current, field_name, value)
            return current

        updated = self._repository.update(image_id, apply)
        self._logger.info(
            "Image metadata edited",
            LogContext(operation="edit_metadata", component="catalog", owner_id=owner_id).with_metadata(
                image_id=image_id, fields=",".join(sorted(changes))
            ),
        )
        if updated.publicly_listable:
            self.invalidate_listings()
        return updated

    def delete_image(self, image_id: str, owner_id: str) -> ImageRecord:
        """Remove a record; its stored objects are deleted best-effort."""
        record = self._owned(image_id, owner_id)
        self._queue.cancel(image_id)
        removed = self._repository.delete(image_id) or record

        keys = [self._object_store.key_from_url(url) for url in removed.derivatives.values()]
        keys.append(removed.source_key)
        failures = [
            key for key in keys
            if not best_effort("delete object", self._object_store.delete, key).ok
        ]
        self._logger.info(
            "Image deleted",
            LogContext(operation="delete_image", component="catalog", owner_id=owner_id).with_metadata(
                image_id=image_id, objects=len(keys), leftover=len(failures)
            ),
        )
        self.invalidate_listings()
        return removed

    def resolve_download(
        self, image_id: str, size: str = "original", viewer_id: Optional[str] = None
    ) -> DownloadTarget:
        """Pick the stored derivative that best matches a requested size."""
        record = self.get_image(image_id, viewer_id)
        candidates = DOWNLOAD_SIZES.get((size or "original").lower())
        if candidates is None:
            raise ValidationError(
                f"Unknown size '{size}'; expected one of {', '.join(DOWNLOAD_SIZES)}"
            )

        for size_name in candidates:
            for fmt in PREFERRED_FORMATS:
                key = variant_key(size_name, fmt)
                url = record.derivatives.get(key)
                if url:
                    return DownloadTarget(
                        image_id=image_id,
                        variant_key=key,
                        object_key=self._object_store.key_from_url(url),
                        url=url,
                        content_type=FORMATS[fmt][2],
                    )
        raise NotFoundError(f"Image {image_id} has no derivative for size '{size}' yet")
