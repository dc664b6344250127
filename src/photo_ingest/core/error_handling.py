# src/photo_ingest/core/error_handling.py

import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from botocore.exceptions import BotoCoreError, ClientError
from PIL import UnidentifiedImageError

from .exceptions import PhotoIngestError, ProcessingError, StorageError

RETRYABLE_S3_ERROR_CODES = (
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "SlowDown",
    "RequestTimeout",
    "InternalError",
    "ServiceUnavailable",
)
NOT_FOUND_ERROR_CODES = ("404", "NoSuchKey", "NotFound")

T = TypeVar("T")


def s3_error_code(exc: BaseException) -> Optional[str]:
    """Return the S3 error code carried by a ClientError (or its cause)."""
    candidate = exc if isinstance(exc, ClientError) else exc.__cause__
    if isinstance(candidate, ClientError):
        return candidate.response.get("Error", {}).get("Code")
    return None


def is_not_found(exc: BaseException) -> bool:
    return s3_error_code(exc) in NOT_FOUND_ERROR_CODES


def with_error_handling(func):
    """
    A decorator to wrap functions with standardized error handling.

    botocore failures become StorageError and undecodable images become
    ProcessingError; the original exception is chained as the cause.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__ + '.' + func.__name__)
        try:
            return func(*args, **kwargs)
        except PhotoIngestError:
            raise
        except Exception as e:
            if is_not_found(e):
                logger.debug(f"Object not found in '{func.__name__}': {e}")
            else:
                logger.error(
                    f"Error in '{func.__name__}': {e}",
                    exc_info=True
                )
            if isinstance(e, (ClientError, BotoCoreError)):
                raise StorageError(f"S3 operation failed in {func.__name__}: {e}") from e
            if isinstance(e, UnidentifiedImageError):
                raise ProcessingError(f"Failed to identify image in {func.__name__}: {e}") from e
            raise
    return wrapper


def retry_s3_operation(max_attempts=3, initial_delay=0.2, backoff_factor=2):
    """
    Decorator to retry S3 operations with exponential backoff.

    Only StorageErrors caused by a throttling/transient S3 error code are
    retried; everything else propagates on the first failure.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__ + '.' + func.__name__)
            delay = initial_delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except StorageError as e:
                    if s3_error_code(e) not in RETRYABLE_S3_ERROR_CODES:
                        raise
                    if attempt >= max_attempts:
                        logger.error(
                            f"S3 operation '{func.__name__}' failed after {max_attempts} attempts. Error: {e}"
                        )
                        raise
                    logger.info(
                        f"S3 operation '{func.__name__}' failed. Attempt {attempt}/{max_attempts}. "
                        f"Retrying in {delay:.2f}s. Error: {e}"
                    )
                    time.sleep(delay)
                    delay *= backoff_factor
        return wrapper
    return decorator


class BatchOperationContextManager:
    """
    Context manager for batch operations to collect and summarize errors.
    """
    def __init__(self, operation_name="Batch Operation"):
        self.operation_name = operation_name
        self.errors = []
        self.logger = logging.getLogger(self.__class__.__module__ + '.' + self.__class__.__name__)

    def __enter__(self):
        self.logger.info(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s)."
            )
            for i, error_detail in enumerate(self.errors):
                self.logger.error(
                    f"  Error {i+1}/{len(self.errors)} for item "
                    f"'{error_detail['item']}': {error_detail['error']}"
                )
        elif exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb)
            )
        else:
            self.logger.info(f"{self.operation_name} completed successfully.")

        return False

    def add_error(self, error_message: str, item_identifier: str = "Unknown item"):
        """
        Report an error for a specific item within the 'with' block.

        Args:
            error_message (str): The error message or exception string.
            item_identifier (str): A string identifying the item that failed.
        """
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}")


@dataclass
class BestEffortResult(Generic[T]):
    """Outcome of a best-effort call: either a value or an ignored failure."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ignored_failure(self) -> bool:
        return not self.ok


def best_effort(
    operation: str,
    func: Callable[..., T],
    *args: Any,
    logger: Optional[logging.Logger] = None,
    **kwargs: Any,
) -> BestEffortResult[T]:
    """
    Run `func` so that no exception ever escapes.

    Failures are logged once here, at warning level, and returned as an
    ignored-failure result for callers that want to report it.
    """
    log = logger or logging.getLogger(__name__)
    try:
        return BestEffortResult(ok=True, value=func(*args, **kwargs))
    except Exception as e:  # noqa: BLE001
        log.warning(f"Best-effort call '{operation}' failed and was ignored: {e}")
        return BestEffortResult(ok=False, error=str(e))
