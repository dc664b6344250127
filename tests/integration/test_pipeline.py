"""Integration tests for the complete pipeline."""

import io
import threading

import pytest
from PIL import Image

from photo_ingest.core.exceptions import ConflictError
from photo_ingest.core.models import JobState, MetadataDraft, ProcessingStatus
from photo_ingest.pipeline.coordinator import UploadFile
from photo_ingest.pipeline.worker import PillowDerivativeRenderer
from photo_ingest.testing.fakes import FlakyRenderer, create_test_image


def _photo(name, width=240, height=180):
    return UploadFile(name, "image/jpeg", create_test_image(width, height))


class EditingRenderer:
    """Renderer that runs `on_first_render` while the first derivative is being produced."""

    def __init__(self):
        self._inner = PillowDerivativeRenderer()
        self.on_first_render = None
        self._fired = False
        self._lock = threading.Lock()

    def render(self, image_bytes, width, fmt, quality=None):
        with self._lock:
            fire = not self._fired and self.on_first_render is not None
            self._fired = True
        if fire:
            self.on_first_render()
        return self._inner.render(image_bytes, width, fmt, quality)

    def extract_metadata(self, image_bytes):
        return self._inner.extract_metadata(image_bytes)


class TestPipelineIntegration:
    """Integration tests for the complete ingestion pipeline."""

    def test_upload_is_listed_once_processed(self, pipeline, fake_s3):
        """A two-phase upload becomes publicly listed only after processing."""
        coordinator = pipeline.coordinator_for("alice")
        try:
            result = coordinator.begin_upload(_photo("sunset.jpg"), MetadataDraft(title="Sunset", category="nature"))
        finally:
            coordinator.close()

        assert result.success
        assert pipeline.catalog.list_public().items == []

        assert pipeline.drain() == 1

        listing = pipeline.catalog.list_public()
        assert [record.image_id for record in listing.items] == [result.image_id]
        record = listing.items[0]
        assert record.processing_status == ProcessingStatus.COMPLETE
        assert len(record.derivatives) == 8
        for url in record.derivatives.values():
            key = pipeline.object_store.key_from_url(url)
            assert fake_s3.get_bucket("photo-app").get_object(key) is not None

    def test_replayed_finalize_is_idempotent(self, pipeline, clock):
        """Repeating a finalize returns the first record and enqueues nothing new."""
        target = pipeline.issuer.issue("alice", "image/jpeg")
        pipeline.object_store.put_bytes(target.object_key, create_test_image(), "image/jpeg")
        draft = MetadataDraft(title="Once", category="nature")

        first = pipeline.finalizer.finalize(target.upload_id, "alice", draft)
        pipeline.drain()
        clock.advance(10)
        second = pipeline.finalizer.finalize(target.upload_id, "alice", draft)

        assert first.created and not second.created
        assert second.record.image_id == first.record.image_id
        assert len(pipeline.repository) == 1
        assert pipeline.queue.stats()["enqueued"] == 1
        assert pipeline.drain() == 0

    def test_flaky_renderer_recovers_on_retry(self, make_pipeline, clock):
        """Failed variants are rendered again and the record completes."""
        renderer = FlakyRenderer(PillowDerivativeRenderer(), failures=2)
        pipeline = make_pipeline(renderer=renderer)
        target = pipeline.issuer.issue("alice", "image/jpeg")
        pipeline.object_store.put_bytes(target.object_key, create_test_image(), "image/jpeg")
        record = pipeline.finalizer.finalize(
            target.upload_id, "alice", MetadataDraft(title="Flaky", category="nature")
        ).record

        assert pipeline.drain() == 2

        finished = pipeline.queue.finished_jobs(record.image_id)
        assert [job.state for job in finished] == [JobState.COMPLETE]
        assert finished[0].attempt == 2
        assert renderer.render_calls == 10
        assert pipeline.repository.get(record.image_id).processing_status == ProcessingStatus.COMPLETE

    def test_third_attempt_completes_after_two_failed_attempts(self, make_pipeline):
        """Every render of attempts one and two fails; the third attempt completes."""
        renderer = FlakyRenderer(PillowDerivativeRenderer(), failures=16)
        pipeline = make_pipeline(renderer=renderer, max_attempts=3)
        target = pipeline.issuer.issue("alice", "image/jpeg")
        pipeline.object_store.put_bytes(target.object_key, create_test_image(), "image/jpeg")
        record = pipeline.finalizer.finalize(
            target.upload_id, "alice", MetadataDraft(title="Stubborn", category="nature")
        ).record

        assert pipeline.drain() == 3

        finished = pipeline.queue.finished_jobs(record.image_id)
        assert [job.state for job in finished] == [JobState.COMPLETE]
        assert finished[0].attempt == 3
        assert renderer.render_calls == 24
        stored = pipeline.repository.get(record.image_id)
        assert stored.processing_status == ProcessingStatus.COMPLETE
        assert len(stored.derivatives) == 8
        assert pipeline.catalog.list_public().items[0].image_id == record.image_id

    def test_batch_with_rejections_and_failing_sink(self, pipeline, notifications):
        """Per-item results stand even when the batch report cannot be delivered."""
        notifications.should_fail = True
        items = []
        for n in range(10):
            draft = MetadataDraft(title=f"Item {n}", category="nature")
            if n in (3, 7):
                items.append((UploadFile(f"doc-{n}.pdf", "application/pdf", b"%PDF-1.4"), draft))
            else:
                items.append((_photo(f"photo-{n}.jpg", 60, 40), draft))

        coordinator = pipeline.coordinator_for("alice")
        try:
            outcome = coordinator.upload_batch(items, batch_id="batch-10")
        finally:
            coordinator.close()

        assert outcome.success_count == 8
        assert outcome.failed_count == 2
        assert not outcome.notified
        assert [result.success for result in outcome.results] == [n not in (3, 7) for n in range(10)]
        assert len(pipeline.repository) == 8

        assert pipeline.drain() == 8
        assert pipeline.catalog.list_public(limit=100).pagination.total == 8

    def test_edit_during_processing_is_kept(self, make_pipeline, clock):
        """A metadata edit made while the worker runs survives the worker's write."""
        renderer = EditingRenderer()
        pipeline = make_pipeline(renderer=renderer)
        target = pipeline.issuer.issue("alice", "image/jpeg")
        pipeline.object_store.put_bytes(target.object_key, create_test_image(), "image/jpeg")
        record = pipeline.finalizer.finalize(
            target.upload_id, "alice", MetadataDraft(title="Before", category="nature")
        ).record
        renderer.on_first_render = lambda: pipeline.catalog.edit_metadata(
            record.image_id, "alice", title="After", tags=["edited"]
        )

        pipeline.drain()

        stored = pipeline.repository.get(record.image_id)
        assert stored.title == "After"
        assert stored.tags == ["edited"]
        assert stored.processing_status == ProcessingStatus.COMPLETE
        assert len(stored.derivatives) == 8
        assert stored.version >= record.version + 2

    def test_replacement_overwrites_derivatives(self, pipeline, upload_image, fake_s3):
        """Replacing the source reprocesses into the same derivative keys."""
        record = upload_image().record
        pipeline.drain()
        bucket = fake_s3.get_bucket("photo-app")
        before = bucket.get_object(f"photo-app-images/{record.image_id}-original.webp").body

        target = pipeline.issuer.issue("alice", "image/jpeg")
        pipeline.object_store.put_bytes(target.object_key, create_test_image(400, 300), "image/jpeg")
        pipeline.finalizer.replace_source(record.image_id, "alice", target.upload_id)
        pipeline.drain()

        stored = pipeline.repository.get(record.image_id)
        assert stored.processing_status == ProcessingStatus.COMPLETE
        assert stored.exif["width"] == 400
        assert bucket.get_object(record.source_key) is None
        assert bucket.get_object(f"photo-app-images/{record.image_id}-original.webp").body != before
        assert len(bucket.list_objects(f"photo-app-images/{record.image_id}")) == 8


    def test_replacement_during_processing_is_refused(self, make_pipeline, fake_s3):
        """A replacement made while the old attempt renders is refused, not raced."""
        renderer = EditingRenderer()
        pipeline = make_pipeline(renderer=renderer)
        target = pipeline.issuer.issue("alice", "image/jpeg")
        pipeline.object_store.put_bytes(target.object_key, create_test_image(200, 150), "image/jpeg")
        record = pipeline.finalizer.finalize(
            target.upload_id, "alice", MetadataDraft(title="First", category="nature")
        ).record
        replacement = pipeline.issuer.issue("alice", "image/jpeg")
        pipeline.object_store.put_bytes(replacement.object_key, create_test_image(400, 300), "image/jpeg")
        refused = []

        def replace():
            try:
                pipeline.finalizer.replace_source(record.image_id, "alice", replacement.upload_id)
            except ConflictError as e:
                refused.append(e)

        renderer.on_first_render = replace

        assert pipeline.drain() == 1

        bucket = fake_s3.get_bucket("photo-app")
        original_key = f"photo-app-images/{record.image_id}-original.jpg"
        assert len(refused) == 1
        stored = pipeline.repository.get(record.image_id)
        assert stored.source_key == record.source_key
        assert stored.exif["width"] == 200
        assert Image.open(io.BytesIO(bucket.get_object(original_key).body)).size == (200, 150)

        pipeline.finalizer.replace_source(record.image_id, "alice", replacement.upload_id)
        assert pipeline.drain() == 1

        stored = pipeline.repository.get(record.image_id)
        assert stored.processing_status == ProcessingStatus.COMPLETE
        assert stored.exif["width"] == 400
        assert Image.open(io.BytesIO(bucket.get_object(original_key).body)).size == (400, 300)


class TestWorkerPool:
    """The background pool processes uploads from many clients."""

    @pytest.mark.parametrize("worker_count", [1, 3])
    def test_concurrent_uploads(self, make_pipeline, worker_count):
        pipeline = make_pipeline(worker_count=worker_count)
        pipeline.start_workers()
        results = []
        lock = threading.Lock()

        def client(owner_id):
            coordinator = pipeline.coordinator_for(owner_id)
            try:
                for n in range(3):
                    result = coordinator.begin_upload(
                        _photo(f"{owner_id}-{n}.jpg", 80, 60), MetadataDraft(title=f"{owner_id} {n}", category="nature")
                    )
                    with lock:
                        results.append(result)
            finally:
                coordinator.close()

        threads = [threading.Thread(target=client, args=(owner,)) for owner in ("alice", "bob", "carol")]
        try:
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=60)
            assert pipeline.queue.wait_idle(timeout=60)
        finally:
            pipeline.stop_workers(timeout=30)

        assert len(results) == 9
        assert all(result.success for result in results)
        statuses = {pipeline.repository.get(r.image_id).processing_status for r in results}
        assert statuses == {ProcessingStatus.COMPLETE}
        stats = pipeline.queue.stats()
        assert stats["in_flight_peak"] <= worker_count
        assert stats["in_flight"] == 0
