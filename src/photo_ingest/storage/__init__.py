"""Storage components: object store, upload sessions, image records, cache."""

from .cache import TTLCache
from .object_store import ObjectStoreClient
from .repository import ImageRepository
from .session_store import UploadSessionStore

__all__ = [
    "ObjectStoreClient",
    "UploadSessionStore",
    "ImageRepository",
    "TTLCache",
]
