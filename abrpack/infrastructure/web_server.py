"""HTTP ingestion API for abrpack.

Uploads create pending jobs; clients poll status and list endpoints. Uses
stdlib http.server + socketserver only and runs on a daemon thread.

Endpoints::

    POST /api/videos/upload?title=..&description=..&filename=..   body = video bytes
    GET  /api/videos/<id>/status
    GET  /api/videos/list
    GET  /health
"""
from __future__ import annotations

import json
import logging
import socketserver
import threading
from http.server import BaseHTTPRequestHandler
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

from abrpack.domain.errors import NotFoundError, StorageError, ValidationError
from abrpack.domain.models import JobStatus, VideoJob

if TYPE_CHECKING:
    from abrpack.pipeline.ingest import IngestService

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001

# ---------------------------------------------------------------------------
# Payload builders (pure functions)
# ---------------------------------------------------------------------------

def _iso(job: VideoJob) -> str:
    return job.created_at.isoformat()


def status_payload(job: VideoJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status.value,
        "url": job.result_url,
        "thumbnailUrl": job.thumbnail_url,
        "error": job.error_message,
    }


def list_entry(job: VideoJob, ingest: "IngestService") -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "id": job.id,
        "title": job.title,
        "description": job.description,
        "timestamp": _iso(job),
        **ingest.expected_urls(job.id).model_dump(),
    }
    if job.status == JobStatus.READY:
        entry.update(
            url=job.result_url,
            thumbnailUrl=job.thumbnail_url,
            duration=job.duration,
            width=job.width,
            height=job.height,
        )
    elif job.status == JobStatus.ERROR:
        entry["error"] = job.error_message
    return entry


def list_payload(ingest: "IngestService") -> Dict[str, Any]:
    groups = ingest.list_all()
    return {
        "total": sum(len(jobs) for jobs in groups.values()),
        "videos": {
            status.value: [list_entry(job, ingest) for job in groups[status]]
            for status in (JobStatus.READY, JobStatus.PROCESSING, JobStatus.PENDING, JobStatus.ERROR)
        },
    }


# ---------------------------------------------------------------------------
# HTTP server
# ---------------------------------------------------------------------------

class AbrPackRequestHandler(BaseHTTPRequestHandler):
    """Request handler; ``ingest`` is bound by AbrPackWebServer."""

    ingest: "IngestService"

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("HTTP %s - %s", self.address_string(), format % args)

    def _send_json(self, body: Dict[str, Any], status: int = 200) -> None:
        encoded = json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        self.end_headers()
        self.wfile.write(encoded)

    def _send_error(self, status: int, message: str, code: str) -> None:
        self._send_json({"message": message, "code": code}, status=status)

    def do_GET(self) -> None:
        path = urlsplit(self.path).path.rstrip("/")
        try:
            if path == "/health":
                self._send_json({"status": "ok"})
            elif path == "/api/videos/list":
                self._send_json(list_payload(self.ingest))
            elif path.startswith("/api/videos/") and path.endswith("/status"):
                job_id = path[len("/api/videos/"):-len("/status")]
                try:
                    job = self.ingest.require(job_id)
                except NotFoundError:
                    self._send_error(404, "Video not found", "video/not-found")
                    return
                self._send_json(status_payload(job))
            else:
                self._send_error(404, "Not found", "http/not-found")
        except Exception as exc:
            logger.error("API request error for %s: %s", path, exc)
            self._send_error(500, "Failed to read video status", "video/server-error")

    def do_POST(self) -> None:
        url = urlsplit(self.path)
        if url.path.rstrip("/") != "/api/videos/upload":
            self._send_error(404, "Not found", "http/not-found")
            return

        params = {k: v[0] for k, v in parse_qs(url.query).items()}
        content_type = self.headers.get("Content-Type", "")
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = 0
        if length <= 0:
            self._send_error(400, "No file uploaded", "upload/no-file")
            return

        try:
            # Reject before reading the body so oversized uploads are never buffered
            self.ingest.validate_upload(content_type, length)
            data = self.rfile.read(length)
            job = self.ingest.upload(
                data,
                content_type,
                title=params.get("title"),
                description=params.get("description"),
                filename=params.get("filename"),
            )
        except ValidationError as exc:
            self._send_error(400, str(exc), "upload/invalid-file")
            return
        except StorageError as exc:
            logger.error("Upload error: %s", exc)
            self._send_error(500, "Failed to upload video", "upload/server-error")
            return
        except Exception as exc:
            logger.exception("Unexpected upload error: %s", exc)
            self._send_error(500, "Failed to upload video", "upload/server-error")
            return

        self._send_json(
            {
                "id": job.id,
                "status": job.status.value,
                "expectedUrls": self.ingest.expected_urls(job.id).model_dump(),
            },
            status=201,
        )


class _ThreadingHTTPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Thread-per-request HTTP server with address reuse and daemon threads."""

    allow_reuse_address = True
    daemon_threads = True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class AbrPackWebServer:
    """Ingestion API server running on a daemon thread.

    Usage::

        server = AbrPackWebServer(ingest, port=3001)
        server.start()
        ...
        server.stop()
    """

    def __init__(self, ingest: "IngestService", port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> None:
        self.ingest = ingest
        self.port = port
        self.host = host
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Binds and serves in a background thread. Raises OSError if the port is taken."""
        handler = type("BoundRequestHandler", (AbrPackRequestHandler,), {"ingest": self.ingest})
        self._server = _ThreadingHTTPServer((self.host, self.port), handler)
        self.port = self._server.server_address[1]

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="abrpack-web",
            daemon=True,
        )
        self._thread.start()
        display_host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        logger.info("Ingestion API: http://%s:%d/", display_host, self.port)

    def stop(self) -> None:
        """Gracefully stop the web server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
