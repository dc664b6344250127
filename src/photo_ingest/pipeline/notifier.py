"""Best-effort bulk upload summary notifications."""

import logging
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from ..core.error_handling import BestEffortResult, best_effort
from ..core.logging_config import get_logger
from ..core.models import BatchUploadReport
from ..core.protocols import NotificationSink

BULK_UPLOAD_COMPLETED = "bulk_upload_completed"


class BatchNotifier:
    """
    Reports the outcome of a batch upload to a notification sink.

    Nothing here ever raises: malformed counts and sink failures are logged
    and returned as an ignored failure.
    """

    def __init__(self, sink: NotificationSink, logger: Optional[logging.Logger] = None):
        self._sink = sink
        self._logger = logger or get_logger("photo-ingest.notifier")

    def report_batch(
        self,
        success_count: int,
        total_count: int,
        failed_count: int,
        batch_id: Optional[str] = None,
        owner_id: str = "",
    ) -> BestEffortResult[BatchUploadReport]:
        try:
            report = BatchUploadReport(
                batch_id=batch_id,
                success_count=success_count,
                failed_count=failed_count,
                total_count=total_count,
            )
        except PydanticValidationError as e:
            self._logger.warning(
                f"Ignoring inconsistent batch report {success_count}/{failed_count}/{total_count}: {e}"
            )
            return BestEffortResult(ok=False, error=str(e))

        result = best_effort(
            BULK_UPLOAD_COMPLETED,
            self._sink.notify,
            owner_id,
            BULK_UPLOAD_COMPLETED,
            {
                "batch_id": report.batch_id,
                "success_count": report.success_count,
                "failed_count": report.failed_count,
                "total_count": report.total_count,
            },
            logger=self._logger,
        )
        if result.ok:
            self._logger.info(
                f"Batch {batch_id or '-'} reported: {success_count} of {total_count} succeeded"
            )
            return BestEffortResult(ok=True, value=report)
        return BestEffortResult(ok=False, value=report, error=result.error)
