"""Factory classes for creating configured service instances."""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

import boto3
from botocore.config import Config as BotoConfig

from ..pipeline.catalog import ImageCatalog
from ..pipeline.coordinator import UploadCoordinator
from ..pipeline.finalize import FinalizeHandler, SinglePhaseUploader
from ..pipeline.issuer import PresignedTransferIssuer
from ..pipeline.job_queue import JobQueue
from ..pipeline.notifier import BatchNotifier
from ..pipeline.transports import InProcessTransport
from ..pipeline.worker import ProcessingWorker
from ..storage.object_store import ObjectStoreClient
from ..storage.repository import ImageRepository
from ..storage.session_store import UploadSessionStore
from .error_handling import best_effort
from .logging_config import setup_logger
from .models import IngestConfig, ModerationStatus, UploadMode
from .observability import MetricsCollector, StructuredLogger
from .protocols import (
    CategoryResolver,
    DerivativeRenderer,
    LoggerProtocol,
    ModerationPolicy,
    NotificationSink,
    S3ClientProtocol,
)


class LoggerFactory:
    """Factory for creating logger instances."""

    @staticmethod
    def create_logger(name: str = "photo-ingest", level: Optional[str] = None) -> LoggerProtocol:
        """Create a structured logger on top of the centrally configured one."""
        configured = setup_logger(name, level)
        return StructuredLogger(name, configured.level)


class S3ClientFactory:
    """Factory for creating S3 client instances."""

    @staticmethod
    def create_s3_client(config: Optional[IngestConfig] = None, **kwargs: Any) -> S3ClientProtocol:
        """Create S3 client with timeouts and retries suited to presigned uploads."""
        config = config or IngestConfig()
        session = boto3.Session()
        options: Dict[str, Any] = {
            "region_name": config.region,
            "config": BotoConfig(
                signature_version="s3v4",
                connect_timeout=5,
                read_timeout=60,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        }
        if config.endpoint_url:
            options["endpoint_url"] = config.endpoint_url
        options.update(kwargs)
        return session.client("s3", **options)  # type: ignore


class StaticCategoryResolver:
    """Resolves categories against a fixed list, case-insensitively."""

    def __init__(self, categories: Iterable[str] = ()):
        self._known = {self.slug(name): name for name in categories if name.strip()}

    @staticmethod
    def slug(name: str) -> str:
        return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")

    def resolve(self, category: str) -> Optional[str]:
        slug = self.slug(category)
        if not slug:
            return None
        if not self._known:
            return slug
        return slug if slug in self._known else None


class AdminModerationPolicy:
    """Admins' uploads are approved right away; everyone else waits for review."""

    def __init__(self, admin_owner_ids: Iterable[str] = (), auto_approve: bool = False):
        self._admins = set(admin_owner_ids)
        self._auto_approve = auto_approve

    def initial_status(self, owner_id: str) -> ModerationStatus:
        if self._auto_approve or owner_id in self._admins:
            return ModerationStatus.APPROVED
        return ModerationStatus.PENDING


class LoggingNotificationSink:
    """Notification sink that only writes the notification to the log."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or setup_logger("photo-ingest.notifications")

    def notify(self, owner_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self._logger.info(f"Notification '{kind}' for {owner_id or '-'}: {payload}")


@dataclass
class IngestionPipeline:
    """All server-side components of the ingestion pipeline, wired together."""

    config: IngestConfig
    object_store: ObjectStoreClient
    sessions: UploadSessionStore
    repository: ImageRepository
    issuer: PresignedTransferIssuer
    finalizer: FinalizeHandler
    uploader: SinglePhaseUploader
    queue: JobQueue
    worker: ProcessingWorker
    notifier: BatchNotifier
    catalog: ImageCatalog
    logger: LoggerProtocol
    metrics: MetricsCollector = field(default_factory=MetricsCollector)

    def start_workers(self) -> None:
        self.queue.start(self.worker.process)

    def stop_workers(self, timeout: Optional[float] = None) -> None:
        self.queue.stop(timeout)

    def drain(self, wait_for_delayed: bool = False, timeout: Optional[float] = None) -> int:
        """Process queued jobs on the calling thread."""
        return self.queue.run_until_idle(
            self.worker.process, wait_for_delayed=wait_for_delayed, timeout=timeout
        )

    def coordinator_for(
        self,
        owner_id: str,
        mode: UploadMode = UploadMode.TWO_PHASE,
        finalize_retries: int = 0,
    ) -> UploadCoordinator:
        transport = InProcessTransport(
            owner_id, self.issuer, self.object_store, self.finalizer, self.notifier
        )
        return UploadCoordinator(transport, self.config, mode=mode, finalize_retries=finalize_retries)

    def sweep_sessions(self, delete_orphans: bool = False) -> Dict[str, int]:
        """
        Expire abandoned upload sessions.

        With `delete_orphans`, raw objects written for sessions that were
        never finalized are deleted best-effort.
        """
        expired = self.sessions.sweep()
        deleted = 0
        if delete_orphans:
            for session in expired:
                if not self.object_store.exists(session.object_key):
                    continue
                if best_effort("delete orphaned upload", self.object_store.delete, session.object_key).ok:
                    deleted += 1
        if expired:
            self.logger.info(
                f"Session sweep expired {len(expired)} session(s), deleted {deleted} orphaned object(s)"
            )
        return {"expired": len(expired), "deleted": deleted}


class SessionSweeper:
    """
    Calls `IngestionPipeline.sweep_sessions` every `interval_seconds` on a
    background thread until stopped.
    """

    def __init__(self, pipeline: IngestionPipeline, interval_seconds: float, delete_orphans: bool = False):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._pipeline = pipeline
        self._interval = interval_seconds
        self._delete_orphans = delete_orphans
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Session sweeper is already running")
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="session-sweeper", daemon=True)
        self._thread.start()
        self._pipeline.logger.info(
            f"Session sweeper started (every {self._interval}s, delete_orphans={self._delete_orphans})"
        )

    def _run(self) -> None:
        while not self._stopping.wait(self._interval):
            best_effort("session sweep", self._pipeline.sweep_sessions, delete_orphans=self._delete_orphans)
            self.sweeps += 1

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._pipeline.logger.info("Session sweeper stopped")


class IngestionPipelineFactory:
    """Factory for creating the complete ingestion pipeline."""

    @staticmethod
    def create_pipeline(
        config: Optional[IngestConfig] = None,
        s3_client: Optional[S3ClientProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
        categories: Optional[CategoryResolver] = None,
        moderation: Optional[ModerationPolicy] = None,
        notifications: Optional[NotificationSink] = None,
        renderer: Optional[DerivativeRenderer] = None,
        clock: Callable[[], float] = time.time,
    ) -> IngestionPipeline:
        """Create a fully configured ingestion pipeline."""

        # Create default dependencies if not provided
        config = config or IngestConfig.from_env()
        if s3_client is None:
            s3_client = S3ClientFactory.create_s3_client(config)
        if logger is None:
            logger = LoggerFactory.create_logger("photo-ingest.pipeline")
        categories = categories or StaticCategoryResolver(config.categories)
        moderation = moderation or AdminModerationPolicy(config.admin_owner_ids, config.auto_approve)
        notifications = notifications or LoggingNotificationSink()
        metrics = MetricsCollector()

        object_store = ObjectStoreClient(s3_client, config)
        sessions = UploadSessionStore(config.session_grace_seconds, clock=clock)
        repository = ImageRepository(clock=clock)
        queue = JobQueue(
            worker_count=config.worker_count,
            lease_seconds=config.lease_seconds,
            backoff=config.backoff_delay,
            clock=clock,
        )
        catalog = ImageCatalog(repository, object_store, queue, config, categories, logger)

        issuer = PresignedTransferIssuer(object_store, sessions, config, logger, clock=clock)
        finalizer = FinalizeHandler(
            sessions,
            repository,
            object_store,
            queue,
            config,
            categories,
            moderation,
            logger,
            listing_invalidator=catalog.invalidate_listings,
            metrics_collector=metrics,
            clock=clock,
        )
        worker = ProcessingWorker(
            repository,
            object_store,
            config,
            logger,
            renderer=renderer,
            notifications=notifications,
            listing_invalidator=catalog.invalidate_listings,
            metrics_collector=metrics,
            clock=clock,
        )
        queue.on_dead_letter = worker.abandon

        return IngestionPipeline(
            config=config,
            object_store=object_store,
            sessions=sessions,
            repository=repository,
            issuer=issuer,
            finalizer=finalizer,
            uploader=SinglePhaseUploader(issuer, object_store, finalizer),
            queue=queue,
            worker=worker,
            notifier=BatchNotifier(notifications),
            catalog=catalog,
            logger=logger,
            metrics=metrics,
        )
