"""Tests for the shared data models."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError as PydanticValidationError

from photo_ingest.core.exceptions import ConfigurationError
from photo_ingest.core.models import (
    BatchOutcome,
    BatchUploadReport,
    ImageRecord,
    IngestConfig,
    ModerationStatus,
    ProcessingJob,
    ProcessingStatus,
    ProgressEvent,
    UploadPhase,
    UploadResult,
    variant_key,
)


class TestIngestConfig:
    """Tests for IngestConfig."""

    def test_defaults(self):
        config = IngestConfig()

        assert config.bucket == "photo-app"
        assert config.raw_prefix == "photo-app-raw"
        assert config.derivative_prefix == "photo-app-images"
        assert config.presign_expires_seconds == 300
        assert config.max_file_size == 25 * 1024 * 1024
        assert config.max_attempts == 3
        assert config.transfer_timeout_seconds == 120
        assert config.bulk_transfer_timeout_seconds == 300
        assert config.finalize_timeout_seconds == 30
        assert config.listing_cache_ttl_seconds == 60
        assert config.derivative_sizes == {
            "thumbnail": 200,
            "small": 800,
            "regular": 1080,
            "original": None,
        }
        assert config.derivative_formats == ["webp", "jpeg"]

    def test_from_env_reads_prefixed_variables(self):
        env = {
            "PHOTO_INGEST_BUCKET": "media",
            "PHOTO_INGEST_WORKER_COUNT": "8",
            "PHOTO_INGEST_AUTO_APPROVE": "true",
            "PHOTO_INGEST_DERIVATIVE_FORMATS": "webp, avif",
            "PHOTO_INGEST_CATEGORIES": "nature,travel",
            "PHOTO_INGEST_DERIVATIVE_SIZES": "thumb:150,full:",
        }
        with patch.dict(os.environ, env):
            config = IngestConfig.from_env()

        assert config.bucket == "media"
        assert config.worker_count == 8
        assert config.auto_approve is True
        assert config.derivative_formats == ["webp", "avif"]
        assert config.categories == ["nature", "travel"]
        assert config.derivative_sizes == {"thumb": 150, "full": None}

    def test_from_env_overrides_win(self):
        with patch.dict(os.environ, {"PHOTO_INGEST_BUCKET": "media"}):
            config = IngestConfig.from_env(bucket="other")
        assert config.bucket == "other"

    @pytest.mark.parametrize(
        "env",
        [
            {"PHOTO_INGEST_WORKER_COUNT": "0"},
            {"PHOTO_INGEST_MAX_ATTEMPTS": "zero"},
            {"PHOTO_INGEST_CHUNK_SIZE": "-1"},
        ],
    )
    def test_from_env_invalid_values(self, env):
        with patch.dict(os.environ, env):
            with pytest.raises(ConfigurationError):
                IngestConfig.from_env()

    def test_backoff_delay_is_exponential_and_capped(self):
        config = IngestConfig(backoff_base_seconds=2, backoff_factor=3, backoff_cap_seconds=50)

        assert config.backoff_delay(1) == 2
        assert config.backoff_delay(2) == 6
        assert config.backoff_delay(3) == 18
        assert config.backoff_delay(4) == 50


class TestImageRecord:
    """Tests for ImageRecord visibility rules."""

    def _record(self, **kwargs):
        values = dict(
            owner_id="alice",
            upload_id="image-1-abcdef01",
            source_key="photo-app-raw/alice/image-1-abcdef01.jpg",
            title="Sunset",
            category_ref="nature",
        )
        values.update(kwargs)
        return ImageRecord(**values)

    def test_new_record_defaults(self):
        record = self._record()
        assert record.processing_status == ProcessingStatus.QUEUED
        assert record.moderation_status == ModerationStatus.PENDING
        assert record.derivatives == {}
        assert record.version == 1

    @pytest.mark.parametrize(
        "processing, moderation, listable",
        [
            (ProcessingStatus.COMPLETE, ModerationStatus.APPROVED, True),
            (ProcessingStatus.COMPLETE, ModerationStatus.PENDING, False),
            (ProcessingStatus.PROCESSING, ModerationStatus.APPROVED, False),
            (ProcessingStatus.FAILED, ModerationStatus.APPROVED, False),
            (ProcessingStatus.COMPLETE, ModerationStatus.FLAGGED, False),
        ],
    )
    def test_publicly_listable(self, processing, moderation, listable):
        record = self._record(processing_status=processing, moderation_status=moderation)
        assert record.publicly_listable is listable


class TestBatchModels:
    """Tests for batch report and outcome models."""

    def test_report_accepts_consistent_counts(self):
        report = BatchUploadReport(success_count=8, failed_count=2, total_count=10)
        assert report.success_count == 8

    def test_report_rejects_counts_above_total(self):
        with pytest.raises(PydanticValidationError):
            BatchUploadReport(success_count=8, failed_count=3, total_count=10)

    def test_report_rejects_negative_counts(self):
        with pytest.raises(PydanticValidationError):
            BatchUploadReport(success_count=-1, total_count=10)

    def test_outcome_counts(self):
        outcome = BatchOutcome(
            results=[UploadResult(success=True), UploadResult(success=False), UploadResult(success=True)]
        )
        assert outcome.success_count == 2
        assert outcome.failed_count == 1


class TestMisc:
    def test_job_exhausted(self):
        job = ProcessingJob(image_id="i", source_key="k", attempt=3, max_attempts=3)
        assert job.exhausted
        assert not job.model_copy(update={"attempt": 2}).exhausted

    def test_progress_percent_bounds(self):
        with pytest.raises(PydanticValidationError):
            ProgressEvent(phase=UploadPhase.TRANSFER, percent=101)

    def test_variant_key(self):
        assert variant_key("small", "webp") == "small.webp"
