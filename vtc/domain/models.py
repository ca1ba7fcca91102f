import re
import uuid
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

class OperationKind(str, Enum):
    COMPRESS = "compress"
    CONVERT = "convert"
    EXTRACT_AUDIO = "extract_audio"

class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)

class CompressPreset(str, Enum):
    """x264 speed/efficiency presets, fastest first."""
    ULTRAFAST = "ultrafast"
    SUPERFAST = "superfast"
    VERYFAST = "veryfast"
    FASTER = "faster"
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"
    SLOWER = "slower"
    VERYSLOW = "veryslow"

class ContainerFormat(str, Enum):
    MP4 = "mp4"
    MKV = "mkv"
    MOV = "mov"
    AVI = "avi"
    WEBM = "webm"

class AudioFormat(str, Enum):
    MP3 = "mp3"
    AAC = "aac"
    M4A = "m4a"
    WAV = "wav"
    FLAC = "flac"
    OGG = "ogg"

# CRF bounds for libx264 (8-bit)
QUALITY_MIN = 0
QUALITY_MAX = 51
DEFAULT_QUALITY = 23
DEFAULT_BITRATE = "192k"
BITRATE_MIN_KBPS = 32
BITRATE_MAX_KBPS = 320

_RESOLUTION_RE = re.compile(r"^(\d+)x(\d+)$")
_BITRATE_RE = re.compile(r"^(\d+)k$")

def new_job_id() -> str:
    return uuid.uuid4().hex

class CompressOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    quality: int = Field(default=DEFAULT_QUALITY, ge=QUALITY_MIN, le=QUALITY_MAX)
    preset: CompressPreset = CompressPreset.MEDIUM
    resolution: Optional[str] = None  # e.g. "1280x720"

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        match = _RESOLUTION_RE.match(v.strip().lower())
        if not match or int(match.group(1)) == 0 or int(match.group(2)) == 0:
            raise ValueError(f"Invalid resolution {v!r}. Use WIDTHxHEIGHT, e.g. 1280x720.")
        return f"{int(match.group(1))}x{int(match.group(2))}"

class ConvertOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    format: ContainerFormat = ContainerFormat.MP4
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None

class ExtractAudioOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    format: AudioFormat = AudioFormat.MP3
    bitrate: str = DEFAULT_BITRATE

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, v: str) -> str:
        text = str(v).strip().lower()
        if text.isdigit():
            text = f"{text}k"
        match = _BITRATE_RE.match(text)
        if not match:
            raise ValueError(f"Invalid bitrate {v!r}. Use <N>k, e.g. 192k.")
        kbps = int(match.group(1))
        if not BITRATE_MIN_KBPS <= kbps <= BITRATE_MAX_KBPS:
            raise ValueError(f"Bitrate {v!r} out of range ({BITRATE_MIN_KBPS}k-{BITRATE_MAX_KBPS}k).")
        return f"{kbps}k"

OperationOptions = Union[CompressOptions, ConvertOptions, ExtractAudioOptions]

_OPTIONS_FOR_KIND = {
    OperationKind.COMPRESS: CompressOptions,
    OperationKind.CONVERT: ConvertOptions,
    OperationKind.EXTRACT_AUDIO: ExtractAudioOptions,
}

class OperationRequest(BaseModel):
    """One user intent. Immutable once constructed."""
    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    input_path: Path
    output_path: Path
    options: OperationOptions

    @model_validator(mode="after")
    def validate_request(self):
        expected = _OPTIONS_FOR_KIND[self.kind]
        if not isinstance(self.options, expected):
            raise ValueError(
                f"{self.kind.value} requires {expected.__name__}, got {type(self.options).__name__}"
            )
        if self.input_path.expanduser().resolve() == self.output_path.expanduser().resolve():
            raise ValueError("Output path must differ from input path")
        return self

class StreamInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    codec_type: str = "unknown"
    codec_name: str = "unknown"
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[float] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    bit_rate: Optional[int] = None

class MediaMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Path
    format_name: str
    format_long_name: Optional[str] = None
    duration: float = 0.0
    size_bytes: int = 0
    bit_rate: Optional[int] = None
    streams: List[StreamInfo] = Field(default_factory=list)

    @property
    def video_streams(self) -> List[StreamInfo]:
        return [s for s in self.streams if s.codec_type == "video"]

    @property
    def audio_streams(self) -> List[StreamInfo]:
        return [s for s in self.streams if s.codec_type == "audio"]

    @property
    def has_audio(self) -> bool:
        return bool(self.audio_streams)

class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    percent: int = Field(default=0, ge=0, le=100)
    timemark: str = "00:00:00.00"
    target_size_kb: Optional[int] = None

class Outcome(BaseModel):
    """Terminal result of a job. Exactly one is delivered per job id."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    status: JobStatus
    output_path: Optional[Path] = None
    error: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_terminal(cls, v: JobStatus) -> JobStatus:
        if not v.is_terminal:
            raise ValueError(f"Outcome status must be terminal, got {v.value}")
        return v

    @classmethod
    def success(cls, job_id: str, output_path: Path) -> "Outcome":
        return cls(job_id=job_id, status=JobStatus.SUCCEEDED, output_path=output_path)

    @classmethod
    def failure(cls, job_id: str, error: str) -> "Outcome":
        return cls(job_id=job_id, status=JobStatus.FAILED, error=error)

    @classmethod
    def cancelled(cls, job_id: str) -> "Outcome":
        return cls(job_id=job_id, status=JobStatus.CANCELLED)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

class EngineFormat(BaseModel):
    name: str
    description: str = ""
    can_demux: bool = False
    can_mux: bool = False

class EngineCodec(BaseModel):
    name: str
    description: str = ""
    codec_type: str = "unknown"
    can_decode: bool = False
    can_encode: bool = False
