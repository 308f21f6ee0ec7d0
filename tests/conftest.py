import threading
import time
import pytest
import yaml
from pathlib import Path
from unittest.mock import MagicMock

from abrpack.config.models import AppConfig, GeneralConfig, StorageConfig
from abrpack.domain.errors import TranscodeCancelled
from abrpack.domain.models import VideoMetadata
from abrpack.infrastructure.event_bus import EventBus
from abrpack.infrastructure.storage import LocalStorage
from abrpack.pipeline.ingest import IngestService
from abrpack.pipeline.packager import Packager
from abrpack.pipeline.registry import JobRegistry
from abrpack.pipeline.scheduler import Scheduler

PUBLIC_BASE = "https://cdn.example.com"

# ============================================================================
# Test doubles
# ============================================================================

class RecordingStorage(LocalStorage):
    """LocalStorage that remembers every key it was asked to store."""

    def __init__(self, root: Path):
        super().__init__(root, public_base_url=PUBLIC_BASE)
        self.uploaded_keys = []
        self.batches = []
        self.deleted_keys = []

    def upload(self, body, content_type, key):
        self.uploaded_keys.append(key)
        return super().upload(body, content_type, key)

    def upload_batch(self, items):
        items = list(items)
        self.batches.append([item.key for item in items])
        return super().upload_batch(items)

    def delete(self, key):
        self.deleted_keys.append(key)
        return super().delete(key)


class FakeFFmpeg:
    """Stands in for FFmpegAdapter: writes tiny HLS outputs instead of encoding.

    ``failures`` maps rendition name -> exception to raise; ``delays`` maps
    rendition name -> seconds to "encode" (cancellable).
    """

    def __init__(self):
        self.failures = {}
        self.delays = {}
        self.thumbnail_error = None
        self.calls = []
        self.completed = []
        self.cancelled = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def thumbnail(self, input_path, at_seconds, size, output_path):
        if self.thumbnail_error:
            raise self.thumbnail_error
        output_path.write_bytes(b"\xff\xd8jpeg")
        return output_path

    def transcode(self, input_path, rendition, output_dir, cancel_event=None, timeout=None):
        with self._lock:
            self.calls.append(rendition.name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            deadline = time.monotonic() + self.delays.get(rendition.name, 0.0)
            while time.monotonic() < deadline:
                if cancel_event is not None and cancel_event.is_set():
                    with self._lock:
                        self.cancelled.append(rendition.name)
                    raise TranscodeCancelled(f"{rendition.name}: cancelled", rendition=rendition.name)
                time.sleep(0.01)
            if rendition.name in self.failures:
                raise self.failures[rendition.name]
            (output_dir / "segment0.ts").write_bytes(b"ts")
            (output_dir / "playlist.m3u8").write_text("#EXTM3U\n#EXTINF:6.0,\nsegment0.ts\n#EXT-X-ENDLIST\n")
            with self._lock:
                self.completed.append(rendition.name)
            return output_dir
        finally:
            with self._lock:
                self.active -= 1

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def app_config(tmp_path):
    """AppConfig with local storage and scratch space under tmp_path."""
    return AppConfig(
        general=GeneralConfig(
            scratch_dir=tmp_path / "scratch",
            poll_interval_s=0.05,
            log_path=None,
        ),
        storage=StorageConfig(
            backend="local",
            local_root=tmp_path / "bucket",
            public_base_url=PUBLIC_BASE,
        ),
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "abrpack.yaml"

    content = {
        'general': {
            'scratch_dir': str(tmp_path / "scratch"),
            'poll_interval_s': 2,
            'log_path': str(tmp_path / "logs" / "abrpack.log"),
        },
        'storage': {
            'backend': 'local',
            'local_root': str(tmp_path / "bucket"),
            'public_base_url': PUBLIC_BASE,
        },
        'renditions': [
            {'width': 1280, 'height': 720, 'bitrate': 2800, 'maxrate': 2800, 'bufsize': 5600, 'profile': 'main'},
            {'width': 640, 'height': 360, 'bitrate': 800, 'maxrate': 800, 'bufsize': 1600, 'profile': 'baseline'},
        ],
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def storage(tmp_path):
    return RecordingStorage(tmp_path / "bucket")

@pytest.fixture
def registry():
    return JobRegistry()

@pytest.fixture
def fake_ffprobe():
    probe = MagicMock()
    probe.probe.return_value = VideoMetadata(duration=12.5, width=1920, height=1080)
    return probe

@pytest.fixture
def fake_ffmpeg():
    return FakeFFmpeg()

@pytest.fixture
def packager(app_config, storage, fake_ffprobe, fake_ffmpeg, event_bus):
    return Packager(
        config=app_config,
        storage=storage,
        ffprobe_adapter=fake_ffprobe,
        ffmpeg_adapter=fake_ffmpeg,
        event_bus=event_bus,
    )

@pytest.fixture
def scheduler(app_config, registry, storage, packager, event_bus):
    return Scheduler(
        config=app_config,
        registry=registry,
        storage=storage,
        packager=packager,
        event_bus=event_bus,
    )

@pytest.fixture
def ingest(app_config, registry, storage, event_bus):
    return IngestService(config=app_config, registry=registry, storage=storage, event_bus=event_bus)

@pytest.fixture
def source_file(tmp_path):
    """A staged source file as the scheduler would leave it in scratch."""
    scratch = tmp_path / "scratch"
    scratch.mkdir(exist_ok=True)
    path = scratch / "job1-source.mp4"
    path.write_bytes(b"fake video " * 100)
    return path

@pytest.fixture
def enqueue_uploaded(ingest, storage):
    """Stores a fake original in storage and enqueues a pending job for it."""
    def _enqueue(job_id, title="Untitled", description=""):
        key = f"uploads/{job_id}/original.mp4"
        storage.upload(b"fake video " * 100, "video/mp4", key)
        return ingest.enqueue(job_id, title, description, source_key=key)
    return _enqueue


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
