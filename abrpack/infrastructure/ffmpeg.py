import subprocess
import logging
import time
import threading
import queue
from collections import deque
from pathlib import Path
from typing import List, Optional

from abrpack.config.models import EncoderConfig
from abrpack.domain.errors import ThumbnailError, TranscodeCancelled, TranscodeError
from abrpack.domain.models import Rendition

PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment%d.ts"


class FFmpegAdapter:
    """Wrapper around ffmpeg for thumbnails and HLS rendition encodes."""

    def __init__(self, config: EncoderConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

    def _build_thumbnail_command(self, input_path: Path, at_seconds: float, size: str, output_path: Path) -> List[str]:
        width, height = size.split("x")
        return [
            self.config.ffmpeg_path,
            "-hide_banner",
            "-y",
            "-ss", f"{at_seconds:g}",
            "-i", str(input_path),
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}",
            "-q:v", "2",
            str(output_path),
        ]

    def _build_transcode_command(self, input_path: Path, rendition: Rendition, output_dir: Path) -> List[str]:
        """Constructs the ffmpeg command line for one HLS rendition."""
        return [
            self.config.ffmpeg_path,
            "-hide_banner",
            "-loglevel", self.config.loglevel,
            "-y",
            "-i", str(input_path),
            "-vf", f"scale={rendition.width}:{rendition.height}",
            "-c:v", "libx264",
            "-preset", self.config.preset,
            "-b:v", f"{rendition.bitrate}k",
            "-maxrate", f"{rendition.maxrate}k",
            "-bufsize", f"{rendition.bufsize}k",
            "-profile:v", rendition.profile,
            "-c:a", "aac",
            "-b:a", self.config.audio_bitrate,
            "-ac", str(self.config.audio_channels),
            "-f", "hls",
            "-hls_time", str(self.config.segment_duration),
            "-hls_list_size", "0",
            "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
            "-hls_playlist_type", "vod",
            str(output_dir / PLAYLIST_NAME),
        ]

    def thumbnail(self, input_path: Path, at_seconds: float, size: str, output_path: Path) -> Path:
        """Grabs one frame at ``at_seconds`` and writes it as a JPEG."""
        cmd = self._build_thumbnail_command(input_path, at_seconds, size, output_path)
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        try:
            res = subprocess.run(cmd, capture_output=True, text=True, timeout=self.config.encode_timeout_s)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ThumbnailError(f"Thumbnail generation failed: {exc}") from exc
        if res.returncode != 0:
            tail = (res.stderr or "").strip().splitlines()[-1:] or [""]
            raise ThumbnailError(f"Thumbnail generation failed: ffmpeg exited with code {res.returncode}: {tail[0]}")
        if not output_path.exists():
            raise ThumbnailError(f"Thumbnail generation produced no image (is the video shorter than {at_seconds:g}s?)")
        return output_path

    @staticmethod
    def _terminate(process: subprocess.Popen):
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def transcode(
        self,
        input_path: Path,
        rendition: Rendition,
        output_dir: Path,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Path:
        """Encodes one rendition into ``output_dir`` (playlist + segments).

        Polls ``cancel_event`` while ffmpeg runs; when it is set the process is
        terminated and TranscodeCancelled is raised.
        """
        name = rendition.name
        start_time = time.monotonic()
        timeout = self.config.encode_timeout_s if timeout is None else timeout
        cmd = self._build_transcode_command(input_path, rendition, output_dir)

        self.logger.info(f"ENCODE_START: {name} ({rendition.resolution} @ {rendition.bitrate}k)")
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                bufsize=1
            )
        except OSError as exc:
            raise TranscodeError(f"{name}: could not start ffmpeg: {exc}", rendition=name) from exc

        tail: "deque[str]" = deque(maxlen=20)
        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            if not process.stdout:
                output_queue.put(None)
                return
            for line in process.stdout:
                output_queue.put(line)
            output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        while True:
            if cancel_event is not None and cancel_event.is_set():
                self.logger.info(f"ENCODE_CANCELLED: {name}")
                self._terminate(process)
                raise TranscodeCancelled(f"{name}: cancelled", rendition=name)

            if timeout and time.monotonic() - start_time > timeout:
                self.logger.warning(f"ENCODE_TIMEOUT: {name} after {timeout:.0f}s")
                self._terminate(process)
                raise TranscodeError(f"{name}: encode timed out after {timeout:.0f}s", rendition=name)

            try:
                line = output_queue.get(timeout=0.1)
            except queue.Empty:
                if process.poll() is not None:
                    break
                continue

            if line is None:
                break
            line = line.rstrip()
            if line:
                tail.append(line)

        process.wait()
        elapsed = time.monotonic() - start_time

        if process.returncode != 0:
            detail = tail[-1] if tail else "no output"
            self.logger.info(f"ENCODE_END: {name} status=failed code={process.returncode} elapsed={elapsed:.2f}s")
            raise TranscodeError(
                f"{name}: ffmpeg exited with code {process.returncode}: {detail}", rendition=name
            )
        if not (output_dir / PLAYLIST_NAME).exists():
            raise TranscodeError(f"{name}: ffmpeg finished without writing {PLAYLIST_NAME}", rendition=name)

        self.logger.info(f"ENCODE_END: {name} status=completed elapsed={elapsed:.2f}s")
        return output_dir
