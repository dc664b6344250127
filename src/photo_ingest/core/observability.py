"""Observability utilities for logging, metrics, and tracing."""

import logging
import threading
import time
import uuid
from typing import Any, Dict, Optional, Callable
from dataclasses import dataclass, field
from functools import wraps
from enum import Enum


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class LogContext:
    """Context information for structured logging."""

    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    component: str = ""
    owner_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_operation(self, operation: str) -> "LogContext":
        """Create new context with operation set."""
        return LogContext(
            correlation_id=self.correlation_id,
            operation=operation,
            component=self.component,
            owner_id=self.owner_id,
            metadata=self.metadata.copy(),
        )

    def with_metadata(self, **kwargs) -> "LogContext":
        """Create new context with additional metadata."""
        new_metadata = self.metadata.copy()
        new_metadata.update(kwargs)
        return LogContext(
            correlation_id=self.correlation_id,
            operation=self.operation,
            component=self.component,
            owner_id=self.owner_id,
            metadata=new_metadata,
        )


class StructuredLogger:
    """Structured logger with context support."""

    def __init__(self, name: str, level: int = logging.INFO):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)

        if not self._logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)

    def _log(
        self,
        level: LogLevel,
        message: str,
        context: Optional[LogContext] = None,
        **kwargs,
    ):
        if context:
            formatted_message = f"[{context.correlation_id}] {message}"
            if context.operation:
                formatted_message = f"[{context.operation}] {formatted_message}"

            fields = {**context.metadata, **kwargs}
            if context.owner_id:
                fields["owner_id"] = context.owner_id
            if fields:
                metadata_str = ", ".join(f"{k}={v}" for k, v in fields.items())
                formatted_message = f"{formatted_message} ({metadata_str})"
        elif kwargs:
            metadata_str = ", ".join(f"{k}={v}" for k, v in kwargs.items())
            formatted_message = f"{message} ({metadata_str})"
        else:
            formatted_message = message

        getattr(self._logger, level.value.lower())(formatted_message)

    def debug(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log debug message."""
        self._log(LogLevel.DEBUG, message, context, **kwargs)

    def info(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log info message."""
        self._log(LogLevel.INFO, message, context, **kwargs)

    def warning(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log warning message."""
        self._log(LogLevel.WARNING, message, context, **kwargs)

    def error(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log error message."""
        self._log(LogLevel.ERROR, message, context, **kwargs)

    def critical(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log critical message."""
        self._log(LogLevel.CRITICAL, message, context, **kwargs)


@dataclass
class PerformanceMetrics:
    """Performance metrics for operations."""

    operation: str
    start_time: float
    end_time: float
    success: bool
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        """Calculate operation duration in seconds."""
        return self.end_time - self.start_time


class MetricsCollector:
    """Thread-safe collector for performance metrics."""

    def __init__(self):
        self._metrics: list[PerformanceMetrics] = []
        self._lock = threading.Lock()

    def record_metric(self, metric: PerformanceMetrics):
        """Record a performance metric."""
        with self._lock:
            self._metrics.append(metric)

    def get_metrics(self, operation: Optional[str] = None) -> list[PerformanceMetrics]:
        """Get recorded metrics, optionally filtered by operation."""
        with self._lock:
            if operation:
                return [m for m in self._metrics if m.operation == operation]
            return self._metrics.copy()

    def get_summary(self, operation: Optional[str] = None) -> Dict[str, Any]:
        """Get summary statistics for metrics."""
        metrics = self.get_metrics(operation)

        if not metrics:
            return {}

        durations = [m.duration for m in metrics]
        successful = [m for m in metrics if m.success]

        return {
            "total_operations": len(metrics),
            "successful_operations": len(successful),
            "failed_operations": len(metrics) - len(successful),
            "success_rate": len(successful) / len(metrics),
            "avg_duration": sum(durations) / len(durations),
            "min_duration": min(durations),
            "max_duration": max(durations),
            "total_duration": sum(durations),
        }

    def clear_metrics(self):
        """Clear all recorded metrics."""
        with self._lock:
            self._metrics.clear()


def timed_operation(
    operation_name: str,
    metrics_attr: str = "_metrics_collector",
):
    """
    Decorator for timing service methods.

    The collector is looked up on the bound instance via `metrics_attr`, so
    services can be built with or without metrics.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            collector: Optional[MetricsCollector] = getattr(self, metrics_attr, None)
            start_time = time.time()
            success = False
            error_message = None

            try:
                result = func(self, *args, **kwargs)
                success = True
                return result
            except Exception as e:
                error_message = str(e)
                raise
            finally:
                if collector is not None:
                    collector.record_metric(
                        PerformanceMetrics(
                            operation=operation_name,
                            start_time=start_time,
                            end_time=time.time(),
                            success=success,
                            error_message=error_message,
                        )
                    )

        return wrapper

    return decorator


def create_logger(name: str, log_level: LogLevel = LogLevel.INFO) -> StructuredLogger:
    """Create a structured logger at the given level."""
    level_map = {
        LogLevel.DEBUG: logging.DEBUG,
        LogLevel.INFO: logging.INFO,
        LogLevel.WARNING: logging.WARNING,
        LogLevel.ERROR: logging.ERROR,
        LogLevel.CRITICAL: logging.CRITICAL,
    }

    return StructuredLogger(name, level_map[log_level])
