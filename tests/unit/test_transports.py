"""Tests for the coordinator transports, with HttpTransport driven against the real API."""

import httpx
import pytest
from fastapi.testclient import TestClient

from photo_ingest.api import create_app
from photo_ingest.core.exceptions import NotFoundError, StorageError, TransferTimeoutError, ValidationError
from photo_ingest.core.models import MetadataDraft, ProcessingStatus, UploadMode
from photo_ingest.pipeline.coordinator import UploadCoordinator, UploadFile
from photo_ingest.pipeline.transports import HttpTransport, draft_payload, error_from_response
from photo_ingest.testing.fakes import create_test_image

DRAFT = MetadataDraft(title="Harbour", category="travel", tags=["boats"])


def _image(name="harbour.jpg"):
    return UploadFile(name, "image/jpeg", create_test_image(160, 120))


@pytest.fixture
def api_client(pipeline):
    return TestClient(create_app(pipeline))


@pytest.fixture
def http_coordinator(pipeline, api_client, fake_s3):
    storage = httpx.Client(transport=fake_s3.presigned_transport())
    coordinator = UploadCoordinator(HttpTransport(api_client, "alice", storage_client=storage), pipeline.config)
    yield coordinator
    coordinator.close()
    storage.close()


class TestErrorFromResponse:
    """API error bodies map back onto pipeline exceptions."""

    def test_typed_error(self):
        error = error_from_response(httpx.Response(404, json={"error": "gone", "errorType": "not_found"}))
        assert isinstance(error, NotFoundError)
        assert str(error) == "gone"

    def test_gateway_timeout(self):
        error = error_from_response(httpx.Response(504), phase="finalize")
        assert isinstance(error, TransferTimeoutError)
        assert error.phase == "finalize"

    def test_unparseable_body(self):
        error = error_from_response(httpx.Response(500, text="boom"))
        assert isinstance(error, StorageError)
        assert str(error) == "HTTP 500"

    def test_draft_payload_uses_camel_case(self):
        payload = draft_payload(MetadataDraft(title="t", category="c", camera_model="X100V"))
        assert payload["cameraModel"] == "X100V"
        assert payload["coordinates"] is None


class TestHttpTransport:
    """End-to-end client uploads over HTTP."""

    def test_two_phase_upload(self, http_coordinator, pipeline):
        result = http_coordinator.begin_upload(_image(), DRAFT)

        assert result.success, result.error
        assert result.processing_status == ProcessingStatus.QUEUED
        record = pipeline.repository.get(result.image_id)
        assert record.upload_id == result.upload_id
        assert record.tags == ["boats"]
        assert pipeline.object_store.exists(record.source_key)

    def test_legacy_upload(self, http_coordinator, pipeline):
        result = http_coordinator.begin_upload(_image(), DRAFT, mode=UploadMode.LEGACY)

        assert result.success, result.error
        assert pipeline.repository.get(result.image_id).category_ref == "travel"

    def test_server_validation_errors_are_reported(self, http_coordinator):
        result = http_coordinator.begin_upload(_image(), MetadataDraft(title="", category="travel"))
        assert not result.success
        assert result.error_type == ValidationError.error_type

    def test_replace_batch(self, http_coordinator, pipeline):
        created = http_coordinator.begin_upload(_image(), DRAFT)
        old_source = pipeline.repository.get(created.image_id).source_key

        outcome = http_coordinator.replace_batch([(created.image_id, _image("new.jpg")), ("missing", _image())])

        first, second = outcome.results
        assert first.success
        assert pipeline.repository.get(created.image_id).source_key != old_source
        assert second.error_type == "not_found"

    def test_batch_notification(self, http_coordinator, notifications):
        outcome = http_coordinator.upload_batch([(_image(), DRAFT)], batch_id="b-http")

        assert outcome.notified
        assert notifications.of_kind("bulk_upload_completed")[0]["batch_id"] == "b-http"


class TestStorageFailures:
    """Failures of the direct write to the object store."""

    def _coordinator(self, pipeline, api_client, handler):
        storage = httpx.Client(transport=httpx.MockTransport(handler))
        return UploadCoordinator(HttpTransport(api_client, "alice", storage_client=storage), pipeline.config)

    def test_rejected_transfer(self, pipeline, api_client):
        coordinator = self._coordinator(pipeline, api_client, lambda request: httpx.Response(403))
        try:
            result = coordinator.begin_upload(_image(), DRAFT)
        finally:
            coordinator.close()

        assert result.error_type == "storage"
        assert "HTTP 403" in result.error
        assert len(pipeline.repository) == 0

    def test_transfer_timeout(self, pipeline, api_client):
        def stalled(request):
            raise httpx.WriteTimeout("stalled", request=request)

        coordinator = self._coordinator(pipeline, api_client, stalled)
        try:
            result = coordinator.begin_upload(_image(), DRAFT)
        finally:
            coordinator.close()

        assert result.error_type == "timeout"
        assert len(pipeline.repository) == 0
