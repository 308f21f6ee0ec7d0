import pytest
from datetime import datetime, timezone

from abrpack.domain.errors import NotFoundError, StorageError, ValidationError
from abrpack.domain.events import JobQueued
from abrpack.domain.models import JobStatus, VideoJob
from abrpack.pipeline.ingest import IngestService, generate_job_id


def test_generate_job_id_is_24_hex_chars():
    job_id = generate_job_id()
    assert len(job_id) == 24
    int(job_id, 16)
    assert generate_job_id() != job_id


class TestValidation:
    def test_accepts_mp4(self, ingest):
        ingest.validate_upload("video/mp4", 1024)

    def test_content_type_params_ignored(self, ingest):
        ingest.validate_upload("video/MP4; codecs=avc1", 1024)

    def test_rejects_non_video(self, ingest):
        with pytest.raises(ValidationError, match="Invalid file type"):
            ingest.validate_upload("image/png", 1024)

    def test_rejects_missing_type(self, ingest):
        with pytest.raises(ValidationError, match="Missing content type"):
            ingest.validate_upload(None, 1024)

    def test_rejects_empty(self, ingest):
        with pytest.raises(ValidationError, match="No file uploaded"):
            ingest.validate_upload("video/mp4", 0)

    def test_rejects_too_large(self, ingest, app_config):
        with pytest.raises(ValidationError, match="File too large"):
            ingest.validate_upload("video/mp4", app_config.upload.max_file_size + 1)

    def test_allow_all_video(self, ingest, app_config):
        app_config.upload.allow_all_video = True
        ingest.validate_upload("video/ogg", 1024)


def test_upload_stores_original_and_creates_pending(ingest, storage, event_bus):
    queued = []
    event_bus.subscribe(JobQueued, queued.append)

    job = ingest.upload(b"video-bytes", "video/quicktime", title="Holiday", filename="clip.MOV")

    assert job.status == JobStatus.PENDING
    assert job.title == "Holiday"
    assert job.source_key == f"uploads/{job.id}/original.mov"
    assert storage.download(job.source_key) == b"video-bytes"
    assert ingest.get_status(job.id) == job
    assert queued[0].job.id == job.id


def test_upload_extension_from_content_type(ingest):
    job = ingest.upload(b"x", "video/x-matroska")
    assert job.source_key.endswith("original.mkv")


def test_rejected_upload_creates_nothing(ingest, registry, storage):
    with pytest.raises(ValidationError):
        ingest.upload(b"x", "text/plain")
    assert len(registry) == 0
    assert storage.uploaded_keys == []


def test_upload_storage_failure_creates_no_job(ingest, registry, storage, monkeypatch):
    def fail(body, content_type, key):
        raise StorageError("bucket unavailable")

    monkeypatch.setattr(storage, "upload", fail)
    with pytest.raises(StorageError):
        ingest.upload(b"x", "video/mp4")
    assert len(registry) == 0


def test_enqueue_then_status_is_pending(ingest):
    ingest.enqueue("abc123", "Demo")
    job = ingest.get_status("abc123")
    assert job.status == JobStatus.PENDING
    assert job.title == "Demo"
    assert job.source_key == "uploads/abc123/original.mp4"


def test_enqueue_defaults(ingest):
    job = ingest.enqueue("abc123")
    assert job.title == "Untitled"
    assert job.description == ""


def test_enqueue_duplicate_rejected(ingest):
    ingest.enqueue("abc123")
    with pytest.raises(ValidationError, match="already exists"):
        ingest.enqueue("abc123")


def test_get_status_unknown(ingest):
    assert ingest.get_status("nope") is None
    with pytest.raises(NotFoundError):
        ingest.require("nope")


def test_list_all_groups_newest_first(ingest, registry):
    older = VideoJob(id="older", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    newer = VideoJob(id="newer", created_at=datetime(2024, 1, 2, tzinfo=timezone.utc))
    registry.put(older)
    registry.put(newer)
    registry.put(VideoJob(id="busy").mark_processing())

    groups = ingest.list_all()

    assert set(groups) == set(JobStatus)
    assert [j.id for j in groups[JobStatus.PENDING]] == ["newer", "older"]
    assert [j.id for j in groups[JobStatus.PROCESSING]] == ["busy"]
    assert groups[JobStatus.READY] == []


def test_expected_urls(ingest):
    urls = ingest.expected_urls("abc123")
    assert urls.video == "https://cdn.example.com/videos/abc123/master.m3u8"
    assert urls.thumbnail == "https://cdn.example.com/thumbnails/abc123.jpg"
    assert urls.variants["720p"] == "https://cdn.example.com/videos/abc123/720p/playlist.m3u8"
    assert list(urls.variants) == ["1080p", "720p", "480p", "360p", "240p"]


def test_service_without_bus(app_config, registry, storage):
    service = IngestService(app_config, registry, storage)
    assert service.enqueue("x").status == JobStatus.PENDING
