import subprocess
import json
from pathlib import Path
from typing import Dict, Any

from abrpack.domain.errors import ProbeError
from abrpack.domain.models import VideoMetadata

class FFprobeAdapter:
    """Wrapper around ffprobe to extract source duration and frame size."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 60.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> float:
        if value is None:
            return 0.0
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            pass
        if ":" in text:
            parts = text.split(":")
            if len(parts) in (2, 3):
                try:
                    parts_f = [float(p) for p in parts]
                except ValueError:
                    return 0.0
                if len(parts_f) == 2:
                    minutes, seconds = parts_f
                    return minutes * 60 + seconds
                hours, minutes, seconds = parts_f
                return hours * 3600 + minutes * 60 + seconds
        return 0.0

    @classmethod
    def _parse_time_base_duration(cls, duration_ts: Any, time_base: Any) -> float:
        if duration_ts is None or time_base is None:
            return 0.0
        time_base_text = str(time_base)
        if "/" not in time_base_text:
            return 0.0
        num_text, den_text = time_base_text.split("/", 1)
        num = cls._to_float(num_text)
        den = cls._to_float(den_text)
        if den == 0:
            return 0.0
        ticks = cls._to_float(duration_ts)
        if ticks <= 0:
            return 0.0
        return ticks * (num / den)

    @classmethod
    def _resolve_duration(cls, fmt: Dict[str, Any], video_stream: Dict[str, Any]) -> float:
        # Fallback order: format.duration, format tags, stream.duration, stream tags, duration_ts/time_base, size/bitrate
        duration = cls._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags", {}) or {}
            duration = cls._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            duration = cls._to_float(video_stream.get("duration"))
        if duration <= 0:
            tags = video_stream.get("tags", {}) or {}
            duration = cls._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration <= 0:
            duration = cls._parse_time_base_duration(video_stream.get("duration_ts"), video_stream.get("time_base"))
        if duration <= 0:
            bit_rate = cls._to_float(fmt.get("bit_rate") or video_stream.get("bit_rate"))
            size = cls._to_float(fmt.get("size"))
            if bit_rate > 0 and size > 0:
                duration = (size * 8) / bit_rate
        return duration

    def build_command(self, file_path: Path) -> list:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path),
        ]

    def probe(self, file_path: Path) -> VideoMetadata:
        """Executes ffprobe and parses JSON output."""
        try:
            result = subprocess.run(
                self.build_command(file_path), capture_output=True, text=True, timeout=self.timeout
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ProbeError(f"ffprobe could not run for {file_path}: {exc}") from exc
        if result.returncode != 0:
            raise ProbeError(f"ffprobe failed for {file_path}: {(result.stderr or '').strip()}")

        try:
            data = json.loads(result.stdout)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ProbeError(f"ffprobe returned unreadable output for {file_path}") from exc

        video_stream = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
        if not video_stream:
            raise ProbeError(f"No video stream found in {file_path}")

        return VideoMetadata(
            duration=self._resolve_duration(data.get("format", {}) or {}, video_stream),
            width=int(video_stream.get("width", 0) or 0),
            height=int(video_stream.get("height", 0) or 0),
        )
