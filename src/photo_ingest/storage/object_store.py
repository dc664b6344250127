"""Thin wrapper over the S3 client: presigned writes, HEAD checks, reads, writes."""

from typing import Any, Dict, Optional

from ..core.error_handling import is_not_found, retry_s3_operation, with_error_handling
from ..core.exceptions import StorageError
from ..core.logging_config import get_logger
from ..core.models import IngestConfig
from ..core.protocols import S3ClientProtocol

DERIVATIVE_CACHE_CONTROL = "public, max-age=31536000, immutable"


class ObjectStoreClient:
    """Object store access for one bucket."""

    def __init__(self, s3_client: S3ClientProtocol, config: IngestConfig):
        self._s3 = s3_client
        self._config = config
        self._bucket = config.bucket
        self._logger = get_logger("photo-ingest.object-store")

    @property
    def bucket(self) -> str:
        return self._bucket

    @with_error_handling
    def presign_put(self, key: str, content_type: str, expires_in: int) -> str:
        """Issue a time-bound PUT URL scoped to one key and content type."""
        return self._s3.generate_presigned_url(
            ClientMethod="put_object",
            Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
            HttpMethod="PUT",
        )

    @retry_s3_operation()
    @with_error_handling
    def _head(self, key: str) -> Dict[str, Any]:
        return self._s3.head_object(Bucket=self._bucket, Key=key)

    def head(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Probe an object without reading its body.

        Returns `{"size", "content_type", "etag", "metadata"}`, or None when the
        object does not exist. Any other failure raises StorageError.
        """
        try:
            response = self._head(key)
        except StorageError as e:
            if is_not_found(e):
                return None
            raise
        return {
            "size": int(response.get("ContentLength", 0)),
            "content_type": response.get("ContentType") or "application/octet-stream",
            "etag": str(response.get("ETag", "")).strip('"'),
            "metadata": response.get("Metadata", {}) or {},
        }

    def exists(self, key: str) -> bool:
        return self.head(key) is not None

    @retry_s3_operation()
    @with_error_handling
    def get_bytes(self, key: str) -> bytes:
        """Read a whole object into memory."""
        self._logger.debug(f"Downloading s3://{self._bucket}/{key}")
        response = self._s3.get_object(Bucket=self._bucket, Key=key)
        return response["Body"].read()

    @with_error_handling
    def open_stream(self, key: str) -> Dict[str, Any]:
        """Open an object for streaming; returns `{"body", "content_type", "size"}`."""
        response = self._s3.get_object(Bucket=self._bucket, Key=key)
        return {
            "body": response["Body"],
            "content_type": response.get("ContentType") or "application/octet-stream",
            "size": response.get("ContentLength"),
        }

    @retry_s3_operation()
    @with_error_handling
    def put_bytes(
        self,
        key: str,
        body: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
    ) -> str:
        """Write an object and return its public URL."""
        self._logger.debug(f"Uploading s3://{self._bucket}/{key} ({len(body)} bytes)")
        extra: Dict[str, Any] = {}
        if cache_control:
            extra["CacheControl"] = cache_control
        self._s3.put_object(
            Bucket=self._bucket, Key=key, Body=body, ContentType=content_type, **extra
        )
        return self.public_url(key)

    @with_error_handling
    def delete(self, key: str) -> None:
        self._s3.delete_object(Bucket=self._bucket, Key=key)

    def public_url(self, key: str) -> str:
        if self._config.public_base_url:
            return f"{self._config.public_base_url.rstrip('/')}/{key}"
        return f"https://{self._bucket}.s3.{self._config.region}.amazonaws.com/{key}"

    def key_from_url(self, url: str) -> str:
        """Inverse of public_url for URLs this store produced."""
        if self._config.public_base_url and url.startswith(self._config.public_base_url):
            return url[len(self._config.public_base_url.rstrip("/")) + 1 :]
        marker = ".amazonaws.com/"
        if marker in url:
            return url.split(marker, 1)[1]
        return url
