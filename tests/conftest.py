"""Shared fixtures: a fully wired pipeline over in-memory fakes."""

from typing import Any, Callable, Optional

import pytest

from photo_ingest.core.factories import IngestionPipeline, IngestionPipelineFactory
from photo_ingest.core.models import IngestConfig, MetadataDraft
from photo_ingest.pipeline.finalize import FinalizeResult
from photo_ingest.testing.fakes import (
    FakeCategoryResolver,
    FakeClock,
    FakeLogger,
    FakeModerationPolicy,
    FakeNotificationSink,
    create_test_image,
    setup_test_s3_environment,
)


def pipeline_config(**overrides: Any) -> IngestConfig:
    """Config with zero backoff so retries are due immediately."""
    values = {"backoff_base_seconds": 0.0, "worker_count": 2, "chunk_size": 64 * 1024}
    values.update(overrides)
    return IngestConfig(**values)


@pytest.fixture
def fake_s3():
    return setup_test_s3_environment()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifications():
    return FakeNotificationSink()


@pytest.fixture
def make_pipeline(fake_s3, clock, notifications) -> Callable[..., IngestionPipeline]:
    """Build a pipeline; keyword arguments override config fields or collaborators."""

    def build(renderer=None, moderation=None, **config_overrides: Any) -> IngestionPipeline:
        return IngestionPipelineFactory.create_pipeline(
            config=pipeline_config(**config_overrides),
            s3_client=fake_s3,
            logger=FakeLogger(),
            categories=FakeCategoryResolver(),
            moderation=moderation or FakeModerationPolicy(),
            notifications=notifications,
            renderer=renderer,
            clock=clock,
        )

    return build


@pytest.fixture
def pipeline(make_pipeline) -> IngestionPipeline:
    return make_pipeline()


@pytest.fixture
def upload_image(pipeline, clock) -> Callable[..., FinalizeResult]:
    """Transfer an image the way a client would, then finalize it."""

    def upload(
        owner_id: str = "alice",
        title: str = "Sunset",
        category: str = "nature",
        data: Optional[bytes] = None,
        **draft_fields: Any,
    ) -> FinalizeResult:
        body = data if data is not None else create_test_image(200, 150)
        target = pipeline.issuer.issue(owner_id, "image/jpeg", "photo.jpg", len(body))
        pipeline.object_store.put_bytes(target.object_key, body, "image/jpeg")
        clock.advance(1)
        return pipeline.finalizer.finalize(
            target.upload_id,
            owner_id,
            MetadataDraft(title=title, category=category, **draft_fields),
        )

    return upload
