from typing import Optional
from pydantic import BaseModel, Field, field_validator
from vtc.domain.models import (
    AudioFormat,
    CompressPreset,
    ContainerFormat,
    DEFAULT_BITRATE,
    DEFAULT_QUALITY,
    ExtractAudioOptions,
    QUALITY_MAX,
    QUALITY_MIN,
)

class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None  # None -> vtc.log in the working directory

class EngineConfig(BaseModel):
    """Where to find ffmpeg/ffprobe. Unset values are resolved per platform."""
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    resources_dir: Optional[str] = None  # Packaged builds: root of bundled engine binaries

class CompressDefaults(BaseModel):
    quality: int = Field(default=DEFAULT_QUALITY, ge=QUALITY_MIN, le=QUALITY_MAX)
    preset: CompressPreset = CompressPreset.MEDIUM

class ConvertDefaults(BaseModel):
    format: ContainerFormat = ContainerFormat.MP4

class ExtractAudioDefaults(BaseModel):
    format: AudioFormat = AudioFormat.MP3
    bitrate: str = DEFAULT_BITRATE

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, v: str) -> str:
        # Same rules as a request; keeps a bad config from failing every job later
        return ExtractAudioOptions(bitrate=v).bitrate

class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    compress: CompressDefaults = Field(default_factory=CompressDefaults)
    convert: ConvertDefaults = Field(default_factory=ConvertDefaults)
    extract_audio: ExtractAudioDefaults = Field(default_factory=ExtractAudioDefaults)
