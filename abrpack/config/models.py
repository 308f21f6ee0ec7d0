from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from abrpack.domain.models import Rendition

DEFAULT_VIDEO_TYPES = [
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/webm",
    "video/x-ms-wmv",
    "video/x-flv",
    "video/3gpp",
    "video/x-m4v",
    "video/mpeg",
]


def default_ladder() -> List[Rendition]:
    return [
        Rendition(width=1920, height=1080, bitrate=6000, maxrate=6000, bufsize=12000, profile="high"),
        Rendition(width=1280, height=720, bitrate=2800, maxrate=2800, bufsize=5600, profile="main"),
        Rendition(width=854, height=480, bitrate=1400, maxrate=1400, bufsize=2800, profile="main"),
        Rendition(width=640, height=360, bitrate=800, maxrate=800, bufsize=1600, profile="baseline"),
        Rendition(width=426, height=240, bitrate=400, maxrate=400, bufsize=800, profile="baseline"),
    ]


class GeneralConfig(BaseModel):
    scratch_dir: Path = Field(default=Path("/tmp/abrpack/video-processing"))
    poll_interval_s: float = Field(default=5.0, gt=0)
    delete_source_after_publish: bool = True
    log_path: Optional[str] = Field(default="/tmp/abrpack/abrpack.log")
    debug: bool = False


class StorageConfig(BaseModel):
    backend: str = "s3"
    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None  # MinIO / S3-compatible endpoint
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    cdn_domain: Optional[str] = None
    public_base_url: Optional[str] = None
    local_root: Path = Field(default=Path("/tmp/abrpack/storage"))
    cache_control: str = "public, max-age=31536000, immutable"
    playlist_cache_control: str = "public, max-age=60"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        allowed = {"s3", "local"}
        if v not in allowed:
            raise ValueError(f"Unsupported storage backend: {v}. Use one of {sorted(allowed)}")
        return v

    @model_validator(mode="after")
    def validate_bucket(self):
        if self.backend == "s3" and not self.bucket:
            raise ValueError("storage.bucket is required for the s3 backend")
        return self


class EncoderConfig(BaseModel):
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    segment_duration: int = Field(default=6, ge=1)
    audio_bitrate: str = "128k"
    audio_channels: int = Field(default=2, ge=1)
    preset: str = "veryfast"
    thumbnail_offset_s: float = Field(default=1.0, ge=0.0)
    thumbnail_size: str = "1280x720"
    encode_timeout_s: Optional[float] = Field(default=3600.0, gt=0)
    loglevel: str = "info"

    @field_validator("thumbnail_size")
    @classmethod
    def validate_size(cls, v: str) -> str:
        parts = v.lower().split("x")
        if len(parts) != 2 or not all(p.isdigit() and int(p) > 0 for p in parts):
            raise ValueError(f"Invalid thumbnail_size {v!r}, expected WIDTHxHEIGHT")
        return v.lower()


class UploadConfig(BaseModel):
    max_file_size: int = Field(default=100 * 1024 * 1024, gt=0)
    allowed_types: List[str] = Field(default_factory=lambda: list(DEFAULT_VIDEO_TYPES))
    allow_all_video: bool = False


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=1, le=65535)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    storage: StorageConfig = Field(default_factory=lambda: StorageConfig(backend="local"))
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    renditions: List[Rendition] = Field(default_factory=default_ladder)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("renditions")
    @classmethod
    def validate_ladder(cls, v: List[Rendition]) -> List[Rendition]:
        if not v:
            raise ValueError("renditions must contain at least one entry")
        heights = [r.height for r in v]
        duplicates = sorted({h for h in heights if heights.count(h) > 1})
        if duplicates:
            raise ValueError(f"Duplicate rendition heights: {duplicates}")
        return v
