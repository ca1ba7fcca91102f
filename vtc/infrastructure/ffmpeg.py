import subprocess
import re
import logging
import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional
from vtc.domain.errors import EngineRuntimeError
from vtc.domain.models import EngineCodec, EngineFormat

# Regexes for ffmpeg's human-readable stderr
DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
TIME_RE = re.compile(r"time=\s*(-?\d+:\d+:\d+(?:\.\d+)?)")
SIZE_RE = re.compile(r"size=\s*(\d+)\s*(?:kB|KiB)")

_CODEC_TYPES = {"V": "video", "A": "audio", "S": "subtitle", "D": "data", "T": "attachment"}

RawProgress = Dict[str, Any]

def timemark_to_seconds(timemark: str) -> float:
    """Converts HH:MM:SS.cc to seconds. Negative timemarks count as zero."""
    h, m, s = timemark.split(":")
    seconds = abs(int(h)) * 3600 + int(m) * 60 + float(s)
    return 0.0 if h.startswith("-") else seconds

class ProgressParser:
    """Turns ffmpeg output lines into raw progress dicts.

    The first Duration line seen belongs to the input and is used as the
    denominator for percent. Fields are left as ffmpeg reports them; the
    pipeline normalizes them.
    """

    def __init__(self):
        self.duration: Optional[float] = None

    def feed(self, line: str) -> Optional[RawProgress]:
        if self.duration is None:
            match = DURATION_RE.search(line)
            if match:
                h, m, s = match.groups()
                self.duration = int(h) * 3600 + int(m) * 60 + float(s)
                return None

        time_match = TIME_RE.search(line)
        if not time_match:
            return None

        timemark = time_match.group(1)
        percent = None
        if self.duration:
            percent = timemark_to_seconds(timemark) / self.duration * 100.0

        size_match = SIZE_RE.search(line)
        return {
            "percent": percent,
            "timemark": timemark,
            "target_size_kb": int(size_match.group(1)) if size_match else None,
        }

class FFmpegAdapter:
    """Spawns ffmpeg and streams its progress to callbacks."""

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self.ffmpeg_path = ffmpeg_path
        self.logger = logging.getLogger(__name__)

    def run(
        self,
        cmd: List[str],
        on_spawn: Callable[[subprocess.Popen], None],
        on_progress: Callable[[RawProgress], None],
        on_complete: Callable[[], None],
        on_error: Callable[[str], None],
    ) -> subprocess.Popen:
        """Starts one ffmpeg process and returns immediately.

        on_spawn runs synchronously before any other callback. The rest are
        invoked from a reader thread: on_progress zero or more times, then
        exactly one of on_complete or on_error.
        """
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,  # ffmpeg ends status lines with \r
                bufsize=1,
                errors="replace",
            )
        except OSError as exc:
            raise EngineRuntimeError(f"Failed to start ffmpeg ({cmd[0]}): {exc}") from exc

        try:
            on_spawn(process)
        except BaseException:
            process.kill()
            process.wait()
            if process.stdout:
                process.stdout.close()
            raise

        reader_thread = threading.Thread(
            target=self._stream,
            args=(process, on_progress, on_complete, on_error),
            name=f"ffmpeg-{process.pid}",
            daemon=True,
        )
        reader_thread.start()
        return process

    def _stream(self, process, on_progress, on_complete, on_error):
        parser = ProgressParser()
        tail: "deque[str]" = deque(maxlen=10)
        try:
            if process.stdout:
                for line in process.stdout:
                    raw = parser.feed(line)
                    if raw is not None:
                        try:
                            on_progress(raw)
                        except Exception:
                            self.logger.exception(f"Progress callback failed (pid={process.pid})")
                        continue
                    text = line.strip()
                    if text:
                        tail.append(text)
        finally:
            process.wait()
            if process.stdout:
                process.stdout.close()

        returncode = process.returncode
        if returncode == 0:
            on_complete()
            return

        if returncode is not None and returncode < 0:
            message = f"ffmpeg was terminated by signal {-returncode}"
        else:
            message = f"ffmpeg exited with code {returncode}"
        if tail:
            message = f"{message}: {tail[-1]}"
        on_error(message)

    def _query(self, flag: str) -> str:
        cmd = [self.ffmpeg_path, "-hide_banner", flag]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            raise EngineRuntimeError(f"Failed to start ffmpeg ({self.ffmpeg_path}): {exc}") from exc
        if result.returncode != 0:
            raise EngineRuntimeError(f"ffmpeg {flag} failed: {result.stderr.strip()}")
        return result.stdout

    @staticmethod
    def _table_rows(output: str):
        """Yields (flags, name, description) from ffmpeg's -formats/-codecs tables."""
        width = None
        for line in output.splitlines():
            stripped = line.strip()
            if width is None:
                if stripped and set(stripped) == {"-"}:
                    width = len(stripped)
                continue
            if not stripped:
                continue
            flags = line[1:1 + width]
            parts = line[1 + width:].split(None, 1)
            if not parts:
                continue
            yield flags, parts[0], parts[1].strip() if len(parts) > 1 else ""

    def list_formats(self) -> List[EngineFormat]:
        return [
            EngineFormat(
                name=name,
                description=description,
                can_demux="D" in flags[:1],
                can_mux="E" in flags[1:2],
            )
            for flags, name, description in self._table_rows(self._query("-formats"))
        ]

    def list_codecs(self) -> List[EngineCodec]:
        return [
            EngineCodec(
                name=name,
                description=description,
                codec_type=_CODEC_TYPES.get(flags[2:3], "unknown"),
                can_decode=flags[:1] == "D",
                can_encode=flags[1:2] == "E",
            )
            for flags, name, description in self._table_rows(self._query("-codecs"))
        ]
