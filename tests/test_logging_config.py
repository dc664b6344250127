"""Tests for logging_config.py and the structured logging helpers."""

import os
import sys
import logging
import threading
from unittest.mock import patch

import pytest

from photo_ingest.core.logging_config import (
    setup_logger,
    get_logger,
    configure_worker_logging,
    logger,
)
from photo_ingest.core.observability import (
    LogContext,
    LogLevel,
    MetricsCollector,
    StructuredLogger,
    create_logger,
    timed_operation,
)


class TestSetupLogger:
    """Tests for setup_logger function."""

    def test_setup_logger_default_parameters(self):
        """Test setup_logger with default parameters."""
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("LOG_LEVEL", None)
            test_logger = setup_logger()
        assert test_logger.name == "photo-ingest"
        assert test_logger.level == logging.INFO
        assert len(test_logger.handlers) == 1
        assert not test_logger.propagate

    def test_setup_logger_custom_level_by_parameter(self):
        """Test setup_logger with custom level via parameter."""
        test_logger = setup_logger(name="test-param-level", level="DEBUG")
        assert test_logger.level == logging.DEBUG

    def test_setup_logger_custom_level_by_env_var(self):
        """Test setup_logger with custom level via environment variable."""
        with patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}):
            test_logger = setup_logger(name="test-env-level")
            assert test_logger.level == logging.WARNING

    def test_setup_logger_invalid_level_defaults_to_info(self):
        """Test setup_logger with invalid level defaults to INFO."""
        test_logger = setup_logger(name="test-invalid-level", level="INVALID_LEVEL")
        assert test_logger.level == logging.INFO

    def test_setup_logger_structured_format(self):
        """Structured format carries thread name and call site."""
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("LOG_FORMAT", None)
            test_logger = setup_logger(name="test-structured", format_type="structured")
        format_string = test_logger.handlers[0].formatter._fmt
        assert "%(threadName)s" in format_string
        assert "%(filename)s" in format_string
        assert "%(funcName)s" in format_string

    def test_setup_logger_env_format_override(self):
        """Test setup_logger format override via environment variable."""
        with patch.dict(os.environ, {"LOG_FORMAT": "simple"}):
            test_logger = setup_logger(name="test-env-format", format_type="structured")
            format_string = test_logger.handlers[0].formatter._fmt
            assert "%(filename)s" not in format_string

    def test_setup_logger_no_duplicate_handlers(self):
        """Test that setup_logger doesn't add duplicate handlers."""
        test_logger1 = setup_logger(name="test-no-duplicates")
        test_logger2 = setup_logger(name="test-no-duplicates")

        assert test_logger1 is test_logger2
        assert len(test_logger1.handlers) == 1

    def test_setup_logger_handler_uses_stdout(self):
        """Test that logger handler uses stdout."""
        test_logger = setup_logger(name="test-stdout")
        assert test_logger.handlers[0].stream is sys.stdout


class TestGetLogger:
    """Tests for get_logger function."""

    def test_get_logger_default_name(self):
        assert get_logger().name == "photo-ingest"

    def test_get_logger_returns_configured_logger(self):
        test_logger = get_logger(name="test-configured")
        assert len(test_logger.handlers) == 1
        assert not test_logger.propagate


class TestConfigureWorkerLogging:
    """Tests for configure_worker_logging function."""

    @patch("photo_ingest.core.logging_config.setup_logger")
    def test_uses_explicit_worker_name(self, mock_setup_logger):
        configure_worker_logging("ingest-worker-3")
        mock_setup_logger.assert_called_once_with("photo-ingest.ingest-worker-3")

    @patch("photo_ingest.core.logging_config.setup_logger")
    def test_defaults_to_current_thread_name(self, mock_setup_logger):
        """Pool threads get a child logger named after the thread."""
        thread = threading.Thread(target=configure_worker_logging, name="render-pool-7")
        thread.start()
        thread.join()
        mock_setup_logger.assert_called_once_with("photo-ingest.render-pool-7")


class TestDefaultLogger:
    """Tests for default logger instance."""

    def test_default_logger_exists(self):
        assert isinstance(logger, logging.Logger)
        assert logger.name == "photo-ingest"
        assert not logger.propagate


class TestStructuredLogger:
    """Tests for the context-aware logger used by the pipeline services."""

    def test_context_fields_are_rendered(self, caplog):
        structured = StructuredLogger("test-structured-context")
        structured._logger.propagate = True
        context = LogContext(
            correlation_id="corr-1", operation="finalize", owner_id="alice"
        ).with_metadata(upload_id="image-1-abcdef01")

        with caplog.at_level(logging.INFO, logger="test-structured-context"):
            structured.info("Upload finalized", context)

        message = caplog.records[-1].getMessage()
        assert message.startswith("[finalize] [corr-1] Upload finalized")
        assert "upload_id=image-1-abcdef01" in message
        assert "owner_id=alice" in message

    def test_context_copies_do_not_share_metadata(self):
        base = LogContext(operation="issue").with_metadata(a=1)
        derived = base.with_metadata(b=2).with_operation("finalize")

        assert base.metadata == {"a": 1}
        assert derived.metadata == {"a": 1, "b": 2}
        assert derived.correlation_id == base.correlation_id
        assert derived.operation == "finalize"

    def test_create_logger_maps_levels(self):
        structured = create_logger("test-create-logger", LogLevel.WARNING)
        assert structured._logger.level == logging.WARNING


class TestMetrics:
    """Tests for MetricsCollector and timed_operation."""

    class Service:
        def __init__(self, collector=None):
            self._metrics_collector = collector

        @timed_operation("work")
        def work(self, fail=False):
            if fail:
                raise RuntimeError("nope")
            return "done"

    def test_timed_operation_records_success_and_failure(self):
        collector = MetricsCollector()
        service = self.Service(collector)

        assert service.work() == "done"
        with pytest.raises(RuntimeError):
            service.work(fail=True)

        summary = collector.get_summary("work")
        assert summary["total_operations"] == 2
        assert summary["successful_operations"] == 1
        assert summary["failed_operations"] == 1
        assert collector.get_metrics("work")[1].error_message == "nope"

    def test_timed_operation_without_collector(self):
        assert self.Service().work() == "done"

    def test_clear_metrics(self):
        collector = MetricsCollector()
        self.Service(collector).work()
        collector.clear_metrics()
        assert collector.get_summary() == {}
