import queue
import threading
from typing import Iterator, Optional
from vtc.domain.models import ProgressEvent

_CLOSED = object()

class JobChannel:
    """Per-job progress stream that closes when the job settles.

    The orchestrator is the only producer. Consumers iterate it; iteration
    ends once the job reaches a terminal state, so a listener cannot outlive
    its job.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def put(self, event: ProgressEvent) -> bool:
        """Queues an event. Returns False (and drops it) after close()."""
        with self._lock:
            if self._closed:
                return False
            self._queue.put(event)
            return True

    def close(self) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._queue.put(_CLOSED)
            return True

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None once the channel is closed and drained.

        Raises queue.Empty if nothing arrives within timeout.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # Leave the sentinel for other consumers
            self._queue.put(_CLOSED)
            return None
        return item

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event
