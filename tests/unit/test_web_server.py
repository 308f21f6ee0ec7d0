import json
import urllib.error
import urllib.request
import pytest

from abrpack.domain.models import VideoJob, VideoMetadata
from abrpack.infrastructure.web_server import AbrPackWebServer, list_payload, status_payload


@pytest.fixture
def server(ingest):
    srv = AbrPackWebServer(ingest, port=0, host="127.0.0.1")
    srv.start()
    yield srv
    srv.stop()


def _url(server, path):
    return f"http://127.0.0.1:{server.port}{path}"


def _get(server, path):
    try:
        with urllib.request.urlopen(_url(server, path), timeout=5) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read())


def _post(server, path, data, content_type="video/mp4"):
    request = urllib.request.Request(_url(server, path), data=data, method="POST",
                                     headers={"Content-Type": content_type})
    try:
        with urllib.request.urlopen(request, timeout=5) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read())


def _ready_job(job_id="abc123"):
    return VideoJob(id=job_id, title="Demo").mark_processing().mark_ready(
        f"https://cdn.example.com/videos/{job_id}/master.m3u8",
        f"https://cdn.example.com/thumbnails/{job_id}.jpg",
        VideoMetadata(duration=12.5, width=1920, height=1080),
    )


def test_status_payload_ready():
    assert status_payload(_ready_job()) == {
        "id": "abc123",
        "status": "ready",
        "url": "https://cdn.example.com/videos/abc123/master.m3u8",
        "thumbnailUrl": "https://cdn.example.com/thumbnails/abc123.jpg",
        "error": None,
    }


def test_status_payload_error():
    job = VideoJob(id="def456").mark_processing().mark_error("decode failed")
    payload = status_payload(job)
    assert payload["status"] == "error"
    assert payload["error"] == "decode failed"
    assert payload["url"] is None


def test_list_payload_groups(ingest, registry):
    registry.put(_ready_job())
    registry.put(VideoJob(id="p1"))
    registry.put(VideoJob(id="bad").mark_processing().mark_error("boom"))

    payload = list_payload(ingest)

    assert payload["total"] == 3
    assert list(payload["videos"]) == ["ready", "processing", "pending", "error"]
    ready = payload["videos"]["ready"][0]
    assert ready["url"].endswith("master.m3u8")
    assert ready["duration"] == 12.5
    assert ready["variants"]["720p"].endswith("/videos/abc123/720p/playlist.m3u8")
    assert payload["videos"]["error"][0]["error"] == "boom"
    assert "url" not in payload["videos"]["pending"][0]


def test_health(server):
    assert _get(server, "/health") == (200, {"status": "ok"})


def test_upload_then_status(server):
    status, body = _post(server, "/api/videos/upload?title=Holiday&filename=clip.mp4", b"fake video")

    assert status == 201
    assert body["status"] == "pending"
    assert body["expectedUrls"]["video"].endswith(f"/videos/{body['id']}/master.m3u8")

    status, job = _get(server, f"/api/videos/{body['id']}/status")
    assert status == 200
    assert job["status"] == "pending"
    assert job["url"] is None


def test_upload_invalid_type(server, registry):
    status, body = _post(server, "/api/videos/upload", b"not a video", content_type="text/plain")
    assert status == 400
    assert body["code"] == "upload/invalid-file"
    assert len(registry) == 0


def test_upload_without_body(server):
    status, body = _post(server, "/api/videos/upload", b"")
    assert status == 400
    assert body["code"] == "upload/no-file"


def test_unknown_video_status(server):
    status, body = _get(server, "/api/videos/nope/status")
    assert status == 404
    assert body["code"] == "video/not-found"


def test_list_endpoint(server, ingest):
    ingest.enqueue("abc123", "Demo")
    status, body = _get(server, "/api/videos/list")
    assert status == 200
    assert body["total"] == 1
    assert body["videos"]["pending"][0]["title"] == "Demo"


def test_unknown_route(server):
    status, body = _get(server, "/nope")
    assert status == 404


def test_upload_unexpected_error_returns_json_500(server, ingest, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ingest, "upload", explode)
    status, body = _post(server, "/api/videos/upload", b"fake video")

    assert status == 500
    assert body["code"] == "upload/server-error"
