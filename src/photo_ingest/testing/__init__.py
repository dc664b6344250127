"""Testing utilities and fakes for the photo ingestion pipeline."""

from .fakes import (
    FakeS3Client,
    FakeLogger,
    FakeNotificationSink,
    FakeCategoryResolver,
    FakeModerationPolicy,
    FlakyRenderer,
    FakeClock,
    S3Object,
    S3Bucket,
    create_test_image,
    setup_test_s3_environment,
)

__all__ = [
    "FakeS3Client",
    "FakeLogger",
    "FakeNotificationSink",
    "FakeCategoryResolver",
    "FakeModerationPolicy",
    "FlakyRenderer",
    "FakeClock",
    "S3Object",
    "S3Bucket",
    "create_test_image",
    "setup_test_s3_environment",
]
