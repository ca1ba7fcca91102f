"""Builds ffmpeg command lines for each operation kind.

Pure functions: the same request always yields the same invocation. Output
is written to a hidden ``.part`` sibling with the muxer forced via ``-f``
(the temp extension says nothing about the format) and renamed on success.
"""

import hashlib
from pathlib import Path
from typing import Dict, List, Tuple
from pydantic import BaseModel, ConfigDict
from vtc.domain.models import (
    AudioFormat,
    CompressOptions,
    ContainerFormat,
    ConvertOptions,
    ExtractAudioOptions,
    OperationKind,
    OperationRequest,
)

COMPRESS_VIDEO_CODEC = "libx264"
COMPRESS_AUDIO_CODEC = "aac"
COMPRESS_MUXER = "mp4"

# container -> (muxer, default video codec, default audio codec)
CONTAINER_PROFILES: Dict[ContainerFormat, Tuple[str, str, str]] = {
    ContainerFormat.MP4: ("mp4", "libx264", "aac"),
    ContainerFormat.MKV: ("matroska", "libx264", "aac"),
    ContainerFormat.MOV: ("mov", "libx264", "aac"),
    ContainerFormat.AVI: ("avi", "libx264", "libmp3lame"),
    ContainerFormat.WEBM: ("webm", "libvpx-vp9", "libopus"),
}

# audio format -> (muxer, codec, lossy)
AUDIO_PROFILES: Dict[AudioFormat, Tuple[str, str, bool]] = {
    AudioFormat.MP3: ("mp3", "libmp3lame", True),
    AudioFormat.AAC: ("adts", "aac", True),
    AudioFormat.M4A: ("ipod", "aac", True),
    AudioFormat.WAV: ("wav", "pcm_s16le", False),
    AudioFormat.FLAC: ("flac", "flac", False),
    AudioFormat.OGG: ("ogg", "libvorbis", True),
}

class Invocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: OperationKind
    args: List[str]
    output_path: Path
    temp_path: Path
    muxer: str

def temp_output_path(output_path: Path, job_id: str) -> Path:
    # Digest of the whole id: distinct ids never share a temp file
    digest = hashlib.sha1(job_id.encode("utf-8")).hexdigest()[:12]
    return output_path.with_name(f".{output_path.name}.vtc-{digest}.part")

def _compress_args(options: CompressOptions) -> Tuple[List[str], str]:
    args = [
        "-c:v", COMPRESS_VIDEO_CODEC,
        "-crf", str(options.quality),
        "-preset", options.preset.value,
        "-c:a", COMPRESS_AUDIO_CODEC,
        "-movflags", "+faststart",
    ]
    if options.resolution:
        width, height = options.resolution.split("x")
        args.extend(["-vf", f"scale={width}:{height}"])
    return args, COMPRESS_MUXER

def _convert_args(options: ConvertOptions) -> Tuple[List[str], str]:
    muxer, video_codec, audio_codec = CONTAINER_PROFILES[options.format]
    args = [
        "-c:v", options.video_codec or video_codec,
        "-c:a", options.audio_codec or audio_codec,
    ]
    if options.format == ContainerFormat.MP4:
        args.extend(["-movflags", "+faststart"])
    return args, muxer

def _extract_audio_args(options: ExtractAudioOptions) -> Tuple[List[str], str]:
    muxer, codec, lossy = AUDIO_PROFILES[options.format]
    # Explicit map: a video-only input fails instead of producing an empty file
    args = ["-vn", "-map", "0:a:0", "-c:a", codec]
    if lossy:
        args.extend(["-b:a", options.bitrate])
    return args, muxer

_BUILDERS = {
    OperationKind.COMPRESS: _compress_args,
    OperationKind.CONVERT: _convert_args,
    OperationKind.EXTRACT_AUDIO: _extract_audio_args,
}

def build_invocation(request: OperationRequest, job_id: str, ffmpeg_path: str = "ffmpeg") -> Invocation:
    """Constructs the ffmpeg command line for one request."""
    kind_args, muxer = _BUILDERS[request.kind](request.options)
    temp_path = temp_output_path(request.output_path, job_id)
    args = [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",  # Overwrite the temp file; the real output is only replaced on success
        "-i", str(request.input_path),
        *kind_args,
        "-f", muxer,
        str(temp_path),
    ]
    return Invocation(
        kind=request.kind,
        args=args,
        output_path=request.output_path,
        temp_path=temp_path,
        muxer=muxer,
    )
