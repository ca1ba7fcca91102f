"""Transcode orchestrator: per-job lifecycle from request to terminal outcome.

Builds the ffmpeg invocation for a request, spawns it through the engine
adapter, registers the running process in the JobRegistry, normalizes
progress and settles every job exactly once.

Job state machine:
    PENDING -> RUNNING -> {SUCCEEDED, FAILED, CANCELLED}
    PENDING -> FAILED (engine could not be started)

Settlement rule: the thread that removes a job from the registry settles it.
A cancel request removes the entry before killing the process, so the error
the engine reports for the killed process finds nothing to settle and the
job stays CANCELLED. An engine error for a job that is still registered
(killed by someone else) is a real failure.
"""

import logging
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Dict, Iterator, Optional
from pydantic import ValidationError
from vtc.domain.errors import DuplicateJobError, EngineRuntimeError, InvocationError
from vtc.domain.events import (
    JobCancelled,
    JobCompleted,
    JobFailed,
    JobFinished,
    JobProgressUpdated,
    JobStarted,
)
from vtc.domain.models import (
    JobStatus,
    OperationRequest,
    Outcome,
    ProgressEvent,
    new_job_id,
)
from vtc.infrastructure.event_bus import EventBus
from vtc.infrastructure.ffmpeg import FFmpegAdapter
from vtc.pipeline.channel import JobChannel
from vtc.pipeline.invocation import Invocation, build_invocation
from vtc.pipeline.progress import DEFAULT_TIMEMARK, normalize_progress
from vtc.pipeline.registry import CancelResult, JobHandle, JobRegistry

_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}

_FINISH_EVENTS = {
    JobStatus.SUCCEEDED: JobCompleted,
    JobStatus.FAILED: JobFailed,
    JobStatus.CANCELLED: JobCancelled,
}


class JobTicket:
    """Caller-side view of one submitted job."""

    def __init__(self, job_id: str, request: OperationRequest):
        self.job_id = job_id
        self.request = request
        self.status = JobStatus.PENDING
        self.channel = JobChannel(job_id)
        self.last_progress: Optional[ProgressEvent] = None
        self.started_at = time.monotonic()
        self._future: "Future[Outcome]" = Future()

    def result(self, timeout: Optional[float] = None) -> Outcome:
        """Blocks until the job settles. Raises TimeoutError on timeout."""
        return self._future.result(timeout=timeout)

    def done(self) -> bool:
        return self._future.done()

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._future.result() if self._future.done() else None

    def events(self) -> Iterator[ProgressEvent]:
        """Progress events in engine order; ends when the job settles."""
        return iter(self.channel)

    def add_done_callback(self, callback) -> None:
        self._future.add_done_callback(lambda f: callback(f.result()))

    def _resolve(self, outcome: Outcome) -> None:
        self._future.set_result(outcome)

    def __repr__(self) -> str:
        return f"JobTicket(job_id={self.job_id!r}, kind={self.request.kind.value}, status={self.status.value})"


class Orchestrator:
    """Runs compress / convert / extract-audio jobs against ffmpeg.

    Args:
        event_bus: EventBus for JobStarted/JobProgressUpdated/JobFinished events.
        ffmpeg_adapter: Engine binding used to spawn and stream processes.
        registry: Explicitly owned JobRegistry; one is created if omitted.
    """

    def __init__(
        self,
        event_bus: EventBus,
        ffmpeg_adapter: FFmpegAdapter,
        registry: Optional[JobRegistry] = None,
    ):
        self.event_bus = event_bus
        self.ffmpeg_adapter = ffmpeg_adapter
        self.registry = registry if registry is not None else JobRegistry()
        self.logger = logging.getLogger(__name__)

    def submit(self, request: OperationRequest, job_id: Optional[str] = None) -> JobTicket:
        """Starts a job and returns without waiting for it.

        Raises:
            InvocationError: The request cannot be turned into a command line.
            DuplicateJobError: job_id is already active (caller bug).
        """
        job_id = job_id or new_job_id()
        if job_id in self.registry:
            raise DuplicateJobError(job_id)

        try:
            invocation = build_invocation(request, job_id, self.ffmpeg_adapter.ffmpeg_path)
        except (KeyError, ValueError, ValidationError) as exc:
            raise InvocationError(f"Cannot build {request.kind.value} command: {exc}") from exc

        ticket = JobTicket(job_id, request)
        self.logger.info(
            f"JOB_START: {job_id} kind={request.kind.value} "
            f"input={request.input_path} output={request.output_path}"
        )

        def on_spawn(process):
            handle = JobHandle(job_id, process, ticket)
            # Held so a racing cancel cannot settle before RUNNING is recorded
            with handle.lock:
                self.registry.register(job_id, handle)
                self._transition(ticket, JobStatus.RUNNING)
                self.event_bus.publish(JobStarted(job_id=job_id, request=request, pid=process.pid))

        try:
            self.ffmpeg_adapter.run(
                invocation.args,
                on_spawn=on_spawn,
                on_progress=lambda raw: self._on_progress(job_id, raw),
                on_complete=lambda: self._on_complete(job_id, invocation),
                on_error=lambda message: self._on_error(job_id, invocation, message),
            )
        except EngineRuntimeError as exc:
            self.logger.error(f"JOB_SPAWN_FAILED: {job_id} {exc}")
            self._finish(ticket, Outcome.failure(job_id, str(exc)))
        return ticket

    def cancel(self, job_id: str) -> bool:
        """Kills a running job. Returns False for unknown or finished jobs."""
        result = self.registry.cancel(
            job_id,
            on_cancelled=lambda handle: self._settle(handle, Outcome.cancelled(job_id)),
        )
        return result is CancelResult.CANCELLED

    def cancel_all(self) -> int:
        """Cancels every running job (used on shutdown). Returns how many were cancelled."""
        return sum(1 for job_id in self.registry.active_ids() if self.cancel(job_id))

    def active_jobs(self) -> Dict[str, JobStatus]:
        result = {}
        for job_id in self.registry.active_ids():
            handle = self.registry.lookup(job_id)
            if handle is not None and handle.ticket is not None:
                result[job_id] = handle.ticket.status
        return result

    # -- engine callbacks (reader thread) ---------------------------------

    def _on_progress(self, job_id: str, raw) -> None:
        handle = self.registry.lookup(job_id)
        if handle is None:
            return
        event = normalize_progress(job_id, raw)
        with handle.lock:
            if handle.settled:
                return
            self._deliver_progress(handle.ticket, event)

    def _on_complete(self, job_id: str, invocation: Invocation) -> None:
        handle = self.registry.remove(job_id)
        if handle is None:
            # Cancel won the race; the output must not appear
            self._discard_temp(invocation)
            return

        try:
            invocation.temp_path.replace(invocation.output_path)
        except OSError as exc:
            self._discard_temp(invocation)
            self._settle(handle, Outcome.failure(job_id, f"Could not write {invocation.output_path}: {exc}"))
            return

        with handle.lock:
            last = handle.ticket.last_progress
            if not handle.settled and (last is None or last.percent < 100):
                self._deliver_progress(handle.ticket, ProgressEvent(
                    job_id=job_id,
                    percent=100,
                    timemark=last.timemark if last else DEFAULT_TIMEMARK,
                    target_size_kb=last.target_size_kb if last else None,
                ))
            self._settle(handle, Outcome.success(job_id, invocation.output_path))

    def _on_error(self, job_id: str, invocation: Invocation, message: str) -> None:
        self._discard_temp(invocation)
        handle = self.registry.remove(job_id)
        if handle is None:
            self.logger.debug(f"JOB_ERROR_IGNORED: {job_id} already settled ({message})")
            return
        self._settle(handle, Outcome.failure(job_id, message))

    # -- settlement --------------------------------------------------------

    def _deliver_progress(self, ticket: JobTicket, event: ProgressEvent) -> None:
        ticket.last_progress = event
        ticket.channel.put(event)
        self.event_bus.publish(JobProgressUpdated(job_id=event.job_id, progress=event))

    def _settle(self, handle: JobHandle, outcome: Outcome) -> bool:
        with handle.lock:
            if handle.settled:
                return False
            handle.settled = True
            self._finish(handle.ticket, outcome)
            return True

    def _finish(self, ticket: JobTicket, outcome: Outcome) -> None:
        self._transition(ticket, outcome.status)
        ticket.channel.close()
        ticket._resolve(outcome)

        elapsed = time.monotonic() - ticket.started_at
        detail = f" error={outcome.error}" if outcome.error else ""
        self.logger.info(f"JOB_END: {ticket.job_id} status={outcome.status.value} elapsed={elapsed:.2f}s{detail}")

        event_type = _FINISH_EVENTS.get(outcome.status, JobFinished)
        self.event_bus.publish(event_type(job_id=ticket.job_id, outcome=outcome))

    def _transition(self, ticket: JobTicket, new_status: JobStatus) -> None:
        allowed = _TRANSITIONS.get(ticket.status, set())
        if new_status not in allowed:
            raise RuntimeError(
                f"Illegal job transition {ticket.status.value} -> {new_status.value} for {ticket.job_id}"
            )
        ticket.status = new_status

    def _discard_temp(self, invocation: Invocation) -> None:
        path: Path = invocation.temp_path
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning(f"Could not remove partial output {path}: {exc}")
