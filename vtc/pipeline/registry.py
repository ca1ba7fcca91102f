"""In-memory registry of running engine processes.

The registry is the only mutable state shared between the thread that
submits/cancels jobs and the engine reader threads. Every operation runs
under one lock, and removal hands the JobHandle to exactly one caller: whoever
removes an entry is the one allowed to settle that job.
"""

import logging
import subprocess
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, TYPE_CHECKING
from vtc.domain.errors import DuplicateJobError

if TYPE_CHECKING:
    from vtc.pipeline.orchestrator import JobTicket


class CancelResult(str, Enum):
    CANCELLED = "CANCELLED"
    NOT_FOUND = "NOT_FOUND"


class JobHandle:
    """Live engine process for one job, plus what is needed to settle it.

    ``lock`` serializes progress delivery against settlement; once
    ``settled`` is set nothing more is delivered for the job.
    """

    def __init__(self, job_id: str, process: subprocess.Popen, ticket: Optional["JobTicket"] = None):
        self.job_id = job_id
        self.process = process
        self.ticket = ticket
        self.lock = threading.RLock()
        self.settled = False

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def terminate(self) -> None:
        """Sends SIGKILL (TerminateProcess on Windows). Reaping is left to the reader thread."""
        if self.process.poll() is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            # Exited between poll() and kill()
            pass

    def __repr__(self) -> str:
        return f"JobHandle(job_id={self.job_id!r}, pid={self.pid})"


class JobRegistry:
    """Concurrency-safe mapping of job id -> JobHandle."""

    def __init__(self):
        self._handles: Dict[str, JobHandle] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def register(self, job_id: str, handle: JobHandle) -> None:
        """
        Add a running job.

        Raises:
            DuplicateJobError: If job_id is already registered
        """
        with self._lock:
            if job_id in self._handles:
                raise DuplicateJobError(job_id)
            self._handles[job_id] = handle

    def lookup(self, job_id: str) -> Optional[JobHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def cancel(
        self,
        job_id: str,
        on_cancelled: Optional[Callable[[JobHandle], None]] = None,
    ) -> CancelResult:
        """Kills and forgets a job. Unknown or finished ids are a no-op.

        on_cancelled receives the removed handle after the registry lock is
        released; it runs only when this call actually cancelled the job.
        """
        with self._lock:
            handle = self._handles.pop(job_id, None)
            if handle is None:
                self.logger.debug(f"CANCEL_NOOP: {job_id} (not registered)")
                return CancelResult.NOT_FOUND
            handle.terminate()
        self.logger.info(f"CANCEL: {job_id} (pid={handle.pid})")
        if on_cancelled is not None:
            on_cancelled(handle)
        return CancelResult.CANCELLED

    def remove(self, job_id: str) -> Optional[JobHandle]:
        """Forgets a job. Idempotent; only the first caller gets the handle back."""
        with self._lock:
            return self._handles.pop(job_id, None)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
