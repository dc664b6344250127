"""Centralized logging configuration for the photo ingestion pipeline."""

import os
import sys
import logging
import threading
from typing import Optional

DEFAULT_LOGGER_NAME = "photo-ingest"


def setup_logger(
    name: str = DEFAULT_LOGGER_NAME,
    level: Optional[str] = None,
    format_type: str = "structured",
) -> logging.Logger:
    """
    Setup centralized logging with environment variable configuration.

    Args:
        name: Logger name (defaults to "photo-ingest")
        level: Log level override (defaults to env var or INFO)
        format_type: Logging format ("structured" or "simple")

    Returns:
        Configured logger instance

    Environment Variables:
        LOG_LEVEL: Set logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        LOG_FORMAT: Set format type ("structured" or "simple")
    """
    logger = logging.getLogger(name)

    if level:
        log_level = getattr(logging, level.upper(), logging.INFO)
    else:
        env_level = os.getenv("LOG_LEVEL", "INFO").upper()
        log_level = getattr(logging, env_level, logging.INFO)

    logger.setLevel(log_level)

    # Avoid duplicate handlers
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)

        env_format = os.getenv("LOG_FORMAT", format_type).lower()

        if env_format == "structured":
            formatter = logging.Formatter(
                "%(asctime)s | %(name)s | %(levelname)-8s | %(threadName)s | "
                "%(filename)s:%(lineno)d | %(funcName)s() | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        else:
            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )

        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """
    Get a logger instance with consistent configuration.

    Args:
        name: Logger name

    Returns:
        Configured logger instance
    """
    return setup_logger(name)


def configure_worker_logging(worker_name: Optional[str] = None) -> logging.Logger:
    """
    Configure a per-worker child logger so pool output can be told apart.
    Call this at the top of each job queue worker thread.
    """
    worker_name = worker_name or threading.current_thread().name
    return setup_logger(f"{DEFAULT_LOGGER_NAME}.{worker_name}")


logger = setup_logger()
