import subprocess
import json
from pathlib import Path
from typing import Dict, Any, Optional
from vtc.domain.errors import ProbeError
from vtc.domain.models import MediaMetadata, StreamInfo

class FFprobeAdapter:
    """Wrapper around ffprobe to extract container and stream information."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None

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

    @staticmethod
    def _parse_fps(value: Any) -> Optional[float]:
        """avg_frame_rate comes as 'num/den'; 0/0 means unknown."""
        if not value:
            return None
        text = str(value)
        try:
            if "/" in text:
                num, den = map(float, text.split("/", 1))
                return round(num / den, 3) if den else None
            return round(float(text), 3)
        except ValueError:
            return None

    def _duration(self, fmt: Dict[str, Any], stream: Optional[Dict[str, Any]]) -> float:
        # Fallback order: format.duration, format tags, stream.duration, stream tags, duration_ts/time_base, size/bitrate
        duration = self._to_float(fmt.get("duration"))
        if duration <= 0:
            tags = fmt.get("tags", {}) or {}
            duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if stream is not None:
            if duration <= 0:
                duration = self._to_float(stream.get("duration"))
            if duration <= 0:
                tags = stream.get("tags", {}) or {}
                duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
            if duration <= 0:
                duration = self._parse_time_base_duration(stream.get("duration_ts"), stream.get("time_base"))
        if duration <= 0:
            bit_rate = self._to_float(fmt.get("bit_rate") or (stream or {}).get("bit_rate"))
            size = self._to_float(fmt.get("size"))
            if bit_rate > 0 and size > 0:
                duration = (size * 8) / bit_rate
        return duration

    def _build_stream(self, position: int, raw: Dict[str, Any]) -> StreamInfo:
        codec_type = raw.get("codec_type") or "unknown"
        is_video = codec_type == "video"
        index = self._to_int(raw.get("index"))
        return StreamInfo(
            index=position if index is None else index,
            codec_type=codec_type,
            codec_name=raw.get("codec_name") or "unknown",
            width=self._to_int(raw.get("width")) if is_video else None,
            height=self._to_int(raw.get("height")) if is_video else None,
            fps=self._parse_fps(raw.get("avg_frame_rate") or raw.get("r_frame_rate")) if is_video else None,
            sample_rate=self._to_int(raw.get("sample_rate")),
            channels=self._to_int(raw.get("channels")),
            bit_rate=self._to_int(raw.get("bit_rate")),
        )

    def probe(self, file_path: Path) -> MediaMetadata:
        """Executes ffprobe and parses its JSON output.

        Raises ProbeError rather than returning partial metadata.
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise ProbeError(f"Input file not found: {file_path}")

        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            raise ProbeError(f"Failed to start ffprobe ({self.ffprobe_path}): {exc}") from exc
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise ProbeError(f"ffprobe failed for {file_path}: {detail}")

        try:
            data = json.loads(result.stdout)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ProbeError(f"ffprobe returned invalid JSON for {file_path}: {exc}") from exc

        raw_streams = data.get("streams") or []
        fmt = data.get("format") or {}
        if not raw_streams or not fmt:
            raise ProbeError(f"No media streams found in {file_path}")

        streams = [self._build_stream(i, s) for i, s in enumerate(raw_streams)]
        primary = next((s for s in raw_streams if s.get("codec_type") == "video"), raw_streams[0])

        size_bytes = self._to_int(fmt.get("size"))
        if size_bytes is None:
            size_bytes = file_path.stat().st_size

        return MediaMetadata(
            path=file_path,
            format_name=fmt.get("format_name") or "unknown",
            format_long_name=fmt.get("format_long_name"),
            duration=self._duration(fmt, primary),
            size_bytes=size_bytes,
            bit_rate=self._to_int(fmt.get("bit_rate")),
            streams=streams,
        )
