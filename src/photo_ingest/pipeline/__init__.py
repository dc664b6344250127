"""Ingestion pipeline components, from transfer issuance to processing."""

from .catalog import ImageCatalog, normalize_page
from .coordinator import UploadCoordinator, UploadFile
from .finalize import FinalizeHandler, FinalizeResult, SinglePhaseUploader
from .issuer import PresignedTransferIssuer
from .job_queue import JobQueue
from .notifier import BatchNotifier
from .transports import HttpTransport, InProcessTransport
from .worker import PillowDerivativeRenderer, ProcessingWorker

__all__ = [
    "PresignedTransferIssuer",
    "FinalizeHandler",
    "FinalizeResult",
    "SinglePhaseUploader",
    "JobQueue",
    "ProcessingWorker",
    "PillowDerivativeRenderer",
    "UploadCoordinator",
    "UploadFile",
    "InProcessTransport",
    "HttpTransport",
    "BatchNotifier",
    "ImageCatalog",
    "normalize_page",
]
