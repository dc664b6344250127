# tests/core/test_error_handling.py

import logging
from unittest import mock

import pytest
from botocore.exceptions import ClientError
from PIL import UnidentifiedImageError

from photo_ingest.core.exceptions import (
    PhotoIngestError,
    ProcessingError,
    StorageError,
    ValidationError,
)
from photo_ingest.core.error_handling import (
    BatchOperationContextManager,
    BestEffortResult,
    best_effort,
    is_not_found,
    retry_s3_operation,
    s3_error_code,
    with_error_handling,
)


def _client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError(
        error_response={"Error": {"Code": code, "Message": "Details"}},
        operation_name=operation,
    )


@pytest.fixture
def mock_logger():
    """Mock the loggers the decorators look up by function name."""
    real_get_logger = logging.getLogger
    mock_log_instance = mock.Mock()

    def get_logger(name=None):
        # Leave the root logger real so pytest's logging plugin keeps working.
        return real_get_logger() if name is None else mock_log_instance

    with mock.patch("logging.getLogger", side_effect=get_logger):
        yield mock_log_instance


# --- Tests for @with_error_handling decorator ---

def test_with_error_handling_logs_and_reraises_unmapped(mock_logger):
    """Unmapped exceptions are logged with a traceback and re-raised as is."""
    @with_error_handling
    def func_raising_error():
        raise ValueError("Original error")

    with pytest.raises(ValueError):
        func_raising_error()

    mock_logger.error.assert_called_once()
    _, kwargs = mock_logger.error.call_args
    assert kwargs.get("exc_info") is True


def test_with_error_handling_wraps_botocore_error(mock_logger):
    """ClientError becomes StorageError with the original as its cause."""
    @with_error_handling
    def head_object():
        raise _client_error("AccessDenied", "HeadObject")

    with pytest.raises(StorageError) as excinfo:
        head_object()

    assert "S3 operation failed in head_object" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, ClientError)
    assert s3_error_code(excinfo.value) == "AccessDenied"
    mock_logger.error.assert_called_once()


def test_with_error_handling_not_found_logged_at_debug(mock_logger):
    """Missing objects are an expected outcome and are not logged as errors."""
    @with_error_handling
    def head_object():
        raise _client_error("404", "HeadObject")

    with pytest.raises(StorageError) as excinfo:
        head_object()

    assert is_not_found(excinfo.value)
    mock_logger.error.assert_not_called()
    mock_logger.debug.assert_called_once()


def test_with_error_handling_wraps_pil_error(mock_logger):
    """Undecodable images become ProcessingError."""
    @with_error_handling
    def load():
        raise UnidentifiedImageError("Cannot identify image file")

    with pytest.raises(ProcessingError) as excinfo:
        load()

    assert "Failed to identify image" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, UnidentifiedImageError)


def test_with_error_handling_passes_pipeline_errors_through(mock_logger):
    """Errors already in the pipeline hierarchy are neither wrapped nor logged."""
    @with_error_handling
    def validate():
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        validate()

    mock_logger.error.assert_not_called()


# --- Tests for @retry_s3_operation decorator ---

@mock.patch("time.sleep", return_value=None)
def test_retry_s3_operation_retries_throttling(mock_sleep):
    """Throttled calls are retried with exponential backoff until they succeed."""
    calls = mock.Mock(side_effect=[_client_error("SlowDown"), _client_error("SlowDown"), "ok"])

    @retry_s3_operation(max_attempts=3, initial_delay=0.1, backoff_factor=2)
    @with_error_handling
    def put_object():
        return calls()

    assert put_object() == "ok"
    assert calls.call_count == 3
    assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]


@mock.patch("time.sleep", return_value=None)
def test_retry_s3_operation_gives_up_after_max_attempts(mock_sleep):
    """The last transient error propagates once attempts are used up."""
    @retry_s3_operation(max_attempts=2, initial_delay=0.01)
    @with_error_handling
    def get_object():
        raise _client_error("ServiceUnavailable")

    with pytest.raises(StorageError):
        get_object()
    assert mock_sleep.call_count == 1


@mock.patch("time.sleep", return_value=None)
def test_retry_s3_operation_does_not_retry_permanent_errors(mock_sleep):
    """AccessDenied and missing keys fail on the first attempt."""
    calls = mock.Mock(side_effect=_client_error("NoSuchKey"))

    @retry_s3_operation(max_attempts=3, initial_delay=0.01)
    @with_error_handling
    def get_object():
        calls()

    with pytest.raises(StorageError):
        get_object()
    assert calls.call_count == 1
    mock_sleep.assert_not_called()


# --- Tests for BatchOperationContextManager ---

def test_batch_context_manager_collects_errors(caplog):
    """Per-item errors are collected and summarized on exit."""
    with caplog.at_level(logging.INFO):
        with BatchOperationContextManager("Test Batch") as batch:
            batch.add_error("Failed to process", "item1")
            batch.add_error(ValueError("boom"), "item2")

    assert batch.errors == [
        {"item": "item1", "error": "Failed to process"},
        {"item": "item2", "error": "boom"},
    ]
    assert "Test Batch completed with 2 error(s)." in caplog.text


def test_batch_context_manager_success(caplog):
    """A batch without errors logs a successful completion."""
    with caplog.at_level(logging.INFO):
        with BatchOperationContextManager("Clean Batch") as batch:
            pass

    assert batch.errors == []
    assert "Clean Batch completed successfully." in caplog.text


def test_batch_context_manager_does_not_suppress_exceptions():
    """Unhandled exceptions inside the block propagate."""
    with pytest.raises(RuntimeError):
        with BatchOperationContextManager("Broken Batch"):
            raise RuntimeError("unhandled")


# --- Tests for best_effort ---

class TestBestEffort:
    """Tests for the best-effort call wrapper."""

    def test_returns_value_on_success(self):
        result = best_effort("add", lambda a, b: a + b, 1, 2)

        assert isinstance(result, BestEffortResult)
        assert result.ok
        assert result.value == 3
        assert not result.ignored_failure

    def test_swallows_and_logs_failures(self):
        """No exception escapes; the failure is logged once at warning level."""
        logger = mock.Mock()

        def explode():
            raise ConnectionError("sink down")

        result = best_effort("notify", explode, logger=logger)

        assert not result.ok
        assert result.ignored_failure
        assert result.error == "sink down"
        logger.warning.assert_called_once()
        assert "notify" in logger.warning.call_args.args[0]

    def test_swallows_pipeline_errors_too(self):
        def fail():
            raise PhotoIngestError("internal")

        assert best_effort("op", fail).ignored_failure

    def test_forwards_keyword_arguments(self):
        result = best_effort("kw", lambda *, name: name.upper(), name="x")
        assert result.value == "X"
