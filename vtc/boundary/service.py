"""Boundary between the transcode core and whatever presents it.

A GUI bridge, the CLI in ``vtc.main`` or a test only talks to
TranscodeService: it probes files, submits requests (blocking or not),
cancels by job id and listens to progress.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type
from pydantic import ValidationError
from vtc.config.models import AppConfig
from vtc.domain.errors import EngineRuntimeError, InvocationError
from vtc.domain.events import JobFinished, JobProgressUpdated
from vtc.domain.models import (
    CompressOptions,
    ConvertOptions,
    EngineCodec,
    EngineFormat,
    ExtractAudioOptions,
    MediaMetadata,
    OperationKind,
    OperationRequest,
    Outcome,
    ProgressEvent,
    new_job_id,
)
from vtc.infrastructure.engine_paths import EnginePaths, resolve_engine_paths
from vtc.infrastructure.event_bus import EventBus
from vtc.infrastructure.ffmpeg import FFmpegAdapter
from vtc.infrastructure.ffprobe import FFprobeAdapter
from vtc.pipeline.orchestrator import JobTicket, Orchestrator
from vtc.pipeline.registry import JobRegistry

ProgressListener = Callable[[ProgressEvent], None]


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ()) if p != "__root__")
        msg = error.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


class Subscription:
    """Progress listener registration on the EventBus.

    Scoped to one job id, it closes itself when that job settles. A global
    subscription (job_id=None) stays open until close() is called.
    """

    def __init__(self, bus: EventBus, listener: ProgressListener, job_id: Optional[str] = None):
        self.bus = bus
        self.listener = listener
        self.job_id = job_id
        self._active = True
        bus.subscribe(JobProgressUpdated, self._on_progress)
        if job_id is not None:
            bus.subscribe(JobFinished, self._on_finished)

    @property
    def active(self) -> bool:
        return self._active

    def _on_progress(self, event: JobProgressUpdated):
        if self._active and (self.job_id is None or event.job_id == self.job_id):
            self.listener(event.progress)

    def _on_finished(self, event: JobFinished):
        if event.job_id == self.job_id:
            self.close()

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self.bus.unsubscribe(JobProgressUpdated, self._on_progress)
        if self.job_id is not None:
            self.bus.unsubscribe(JobFinished, self._on_finished)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class TranscodeService:
    """Request/response and event-forwarding contract of the core.

    Args:
        orchestrator: Runs and tracks jobs.
        ffprobe_adapter: Metadata inspector.
        config: Supplies defaults for options the caller leaves unset.
    """

    def __init__(self, orchestrator: Orchestrator, ffprobe_adapter: FFprobeAdapter, config: Optional[AppConfig] = None):
        self.orchestrator = orchestrator
        self.ffprobe_adapter = ffprobe_adapter
        self.config = config or AppConfig()
        self.logger = logging.getLogger(__name__)

    @property
    def event_bus(self) -> EventBus:
        return self.orchestrator.event_bus

    @staticmethod
    def new_job_id() -> str:
        return new_job_id()

    # -- metadata / capabilities ------------------------------------------

    def probe_metadata(self, path: Path) -> MediaMetadata:
        """Raises ProbeError for missing, unreadable or corrupt input."""
        return self.ffprobe_adapter.probe(Path(path))

    def available_formats(self) -> List[EngineFormat]:
        return self.orchestrator.ffmpeg_adapter.list_formats()

    def available_codecs(self) -> List[EngineCodec]:
        return self.orchestrator.ffmpeg_adapter.list_codecs()

    # -- request building --------------------------------------------------

    def _request(
        self,
        kind: OperationKind,
        input_path: Path,
        output_path: Path,
        options_type: Type[Any],
        defaults: Dict[str, Any],
        overrides: Dict[str, Any],
    ) -> OperationRequest:
        values = dict(defaults)
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return OperationRequest(
                kind=kind,
                input_path=Path(input_path),
                output_path=Path(output_path),
                options=options_type(**values),
            )
        except ValidationError as exc:
            raise InvocationError(f"Invalid {kind.value} request: {describe_validation_error(exc)}") from exc

    def compress_request(self, input_path, output_path, quality=None, preset=None, resolution=None) -> OperationRequest:
        defaults = self.config.compress
        return self._request(
            OperationKind.COMPRESS, input_path, output_path, CompressOptions,
            {"quality": defaults.quality, "preset": defaults.preset},
            {"quality": quality, "preset": preset, "resolution": resolution},
        )

    def convert_request(self, input_path, output_path, format=None, video_codec=None, audio_codec=None) -> OperationRequest:
        return self._request(
            OperationKind.CONVERT, input_path, output_path, ConvertOptions,
            {"format": self.config.convert.format},
            {"format": format, "video_codec": video_codec, "audio_codec": audio_codec},
        )

    def extract_audio_request(self, input_path, output_path, format=None, bitrate=None) -> OperationRequest:
        defaults = self.config.extract_audio
        return self._request(
            OperationKind.EXTRACT_AUDIO, input_path, output_path, ExtractAudioOptions,
            {"format": defaults.format, "bitrate": defaults.bitrate},
            {"format": format, "bitrate": bitrate},
        )

    # -- non-blocking submission -------------------------------------------

    def start(self, request: OperationRequest, job_id: Optional[str] = None) -> JobTicket:
        return self.orchestrator.submit(request, job_id=job_id)

    def start_compress(self, input_path, output_path, quality=None, preset=None, resolution=None, job_id=None) -> JobTicket:
        return self.start(self.compress_request(input_path, output_path, quality, preset, resolution), job_id)

    def start_convert(self, input_path, output_path, format=None, video_codec=None, audio_codec=None, job_id=None) -> JobTicket:
        return self.start(self.convert_request(input_path, output_path, format, video_codec, audio_codec), job_id)

    def start_extract_audio(self, input_path, output_path, format=None, bitrate=None, job_id=None) -> JobTicket:
        return self.start(self.extract_audio_request(input_path, output_path, format, bitrate), job_id)

    # -- blocking submission -----------------------------------------------

    def _run(self, build: Callable[[], OperationRequest], job_id: Optional[str], on_progress: Optional[ProgressListener]) -> Outcome:
        job_id = job_id or new_job_id()
        try:
            ticket = self.start(build(), job_id)
        except (InvocationError, EngineRuntimeError) as exc:
            self.logger.error(f"JOB_REJECTED: {job_id} {exc}")
            return Outcome.failure(job_id, str(exc))

        # The channel ends when the job settles, so the listener cannot leak
        for event in ticket.events():
            if on_progress is not None:
                on_progress(event)
        return ticket.result()

    def submit_compress(self, input_path, output_path, quality=None, preset=None, resolution=None,
                        job_id=None, on_progress: Optional[ProgressListener] = None) -> Outcome:
        return self._run(
            lambda: self.compress_request(input_path, output_path, quality, preset, resolution),
            job_id, on_progress,
        )

    def submit_convert(self, input_path, output_path, format=None, video_codec=None, audio_codec=None,
                       job_id=None, on_progress: Optional[ProgressListener] = None) -> Outcome:
        return self._run(
            lambda: self.convert_request(input_path, output_path, format, video_codec, audio_codec),
            job_id, on_progress,
        )

    def submit_extract_audio(self, input_path, output_path, format=None, bitrate=None,
                             job_id=None, on_progress: Optional[ProgressListener] = None) -> Outcome:
        return self._run(
            lambda: self.extract_audio_request(input_path, output_path, format, bitrate),
            job_id, on_progress,
        )

    # -- cancellation / events ---------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """True if a running job was killed; False for unknown or finished ids."""
        return self.orchestrator.cancel(job_id)

    def shutdown(self) -> int:
        return self.orchestrator.cancel_all()

    def subscribe(self, listener: ProgressListener, job_id: Optional[str] = None) -> Subscription:
        """A job-scoped subscription to an unknown or settled job comes back closed."""
        subscription = Subscription(self.event_bus, listener, job_id)
        # Checked after subscribing: a job that settles in between has either
        # left the registry already or will still publish JobFinished to us
        if job_id is not None and job_id not in self.orchestrator.registry:
            subscription.close()
        return subscription


def build_service(config: Optional[AppConfig] = None, event_bus: Optional[EventBus] = None,
                  engine_paths: Optional[EnginePaths] = None) -> TranscodeService:
    """Wires the default collaborators. Engine paths are resolved here, once."""
    config = config or AppConfig()
    engine_paths = engine_paths or resolve_engine_paths(config.engine)
    orchestrator = Orchestrator(
        event_bus=event_bus or EventBus(),
        ffmpeg_adapter=FFmpegAdapter(engine_paths.ffmpeg),
        registry=JobRegistry(),
    )
    return TranscodeService(orchestrator, FFprobeAdapter(engine_paths.ffprobe), config)
