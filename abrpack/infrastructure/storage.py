"""Object storage backends.

The pipeline only talks to :class:`StorageBackend`. ``S3Storage`` targets AWS S3
or any S3-compatible endpoint (MinIO); ``LocalStorage`` keeps objects in a plain
directory for development and tests.
"""

import logging
import mimetypes
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional, Tuple, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from abrpack.config.models import StorageConfig
from abrpack.domain.errors import StorageError

logger = logging.getLogger(__name__)

# HLS assets first; everything else falls back to mimetypes
_CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def content_type_for(name: str) -> str:
    suffix = Path(name).suffix.lower()
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


class UploadItem(NamedTuple):
    body: Union[bytes, Path]
    content_type: str
    key: str


class ObjectInfo(NamedTuple):
    size: int
    content_type: str
    last_modified: datetime


class StorageBackend(ABC):
    """Put/get/delete/head over a bucket plus public URL derivation."""

    def __init__(self, batch_workers: int = 8):
        self.batch_workers = max(1, batch_workers)

    @abstractmethod
    def upload(self, body: Union[bytes, Path], content_type: str, key: str) -> str:
        """Stores one object and returns its public URL."""

    @abstractmethod
    def download(self, key: str) -> bytes:
        pass

    @abstractmethod
    def download_to(self, key: str, path: Path) -> Path:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def head(self, key: str) -> Optional[ObjectInfo]:
        """Returns object info, or None when the key does not exist."""

    @abstractmethod
    def public_url(self, key: str) -> str:
        pass

    def upload_batch(self, items: Iterable[UploadItem]) -> List[Tuple[str, str]]:
        """Uploads every item; returns (key, url) pairs in input order.

        The first failure is raised once the uploads already in flight finish.
        """
        items = list(items)
        if not items:
            return []
        workers = min(self.batch_workers, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload") as executor:
            urls = list(executor.map(lambda item: self.upload(item.body, item.content_type, item.key), items))
        return [(item.key, url) for item, url in zip(items, urls)]


class S3Storage(StorageBackend):
    def __init__(self, config: StorageConfig, client=None):
        super().__init__(batch_workers=8)
        self.config = config
        self.bucket = config.bucket
        self.client = client or self._make_client(config)

    @staticmethod
    def _make_client(config: StorageConfig):
        session = boto3.session.Session(
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=config.region,
        )
        boto_config = BotoConfig(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"})
        if config.endpoint_url:
            # MinIO and most S3-compatible servers need path-style addressing
            boto_config = boto_config.merge(BotoConfig(s3={"addressing_style": "path"}))
        return session.client("s3", endpoint_url=config.endpoint_url, config=boto_config)

    def _cache_control(self, key: str) -> str:
        if key.endswith(".m3u8"):
            return self.config.playlist_cache_control
        return self.config.cache_control

    def upload(self, body: Union[bytes, Path], content_type: str, key: str) -> str:
        extra = {"ContentType": content_type, "CacheControl": self._cache_control(key)}
        try:
            if isinstance(body, Path):
                self.client.upload_file(str(body), self.bucket, key, ExtraArgs=extra)
            else:
                self.client.put_object(Bucket=self.bucket, Key=key, Body=body, **extra)
        except (BotoCoreError, ClientError, OSError) as exc:
            logger.error(f"S3_UPLOAD_FAILED: {key}: {exc}")
            raise StorageError(f"Failed to upload {key}: {exc}") from exc
        return self.public_url(key)

    def download(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"S3_DOWNLOAD_FAILED: {key}: {exc}")
            raise StorageError(f"Failed to download {key}: {exc}") from exc

    def download_to(self, key: str, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(self.bucket, key, str(path))
        except (BotoCoreError, ClientError, OSError) as exc:
            logger.error(f"S3_DOWNLOAD_FAILED: {key}: {exc}")
            raise StorageError(f"Failed to download {key}: {exc}") from exc
        return path

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"S3_DELETE_FAILED: {key}: {exc}")
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            raise StorageError(f"Failed to inspect {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to inspect {key}: {exc}") from exc
        return ObjectInfo(
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or "application/octet-stream",
            last_modified=response.get("LastModified") or datetime.now(timezone.utc),
        )

    def public_url(self, key: str) -> str:
        if self.config.cdn_domain:
            return f"https://{self.config.cdn_domain}/{key}"
        if self.config.endpoint_url:
            return f"{self.config.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.config.region}.amazonaws.com/{key}"


class LocalStorage(StorageBackend):
    """Directory-backed storage; keys map to relative paths under ``root``."""

    def __init__(self, root: Path, public_base_url: Optional[str] = None):
        super().__init__(batch_workers=4)
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def upload(self, body: Union[bytes, Path], content_type: str, key: str) -> str:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
            with os.fdopen(fd, "wb") as f:
                if isinstance(body, Path):
                    with open(body, "rb") as src:
                        shutil.copyfileobj(src, f)
                else:
                    f.write(body)
            os.replace(tmp_name, target)
        except OSError as exc:
            raise StorageError(f"Failed to upload {key}: {exc}") from exc
        return self.public_url(key)

    def download(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to download {key}: {exc}") from exc

    def download_to(self, key: str, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(self._path(key), path)
        except OSError as exc:
            raise StorageError(f"Failed to download {key}: {exc}") from exc
        return path

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def head(self, key: str) -> Optional[ObjectInfo]:
        path = self._path(key)
        if not path.is_file():
            return None
        stat = path.stat()
        return ObjectInfo(
            size=stat.st_size,
            content_type=content_type_for(key),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return (self.root / key).resolve().as_uri()


def create_storage(config: StorageConfig) -> StorageBackend:
    if config.backend == "local":
        return LocalStorage(config.local_root, public_base_url=config.public_base_url)
    return S3Storage(config)
