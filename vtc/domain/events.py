"""Domain events for the transcode job lifecycle.

Events flow through the EventBus and decouple the orchestrator from whatever
presents progress (CLI, GUI bridge, tests). Subscribing to a base class
receives all of its subclasses, so `JobFinished` catches every terminal event.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pydantic import BaseModel
from .models import OperationRequest, Outcome, ProgressEvent


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class JobEvent(Event):
    """Base class for events related to a specific job."""

    job_id: str


class JobStarted(JobEvent):
    """Emitted once the engine process is spawned and registered."""

    request: OperationRequest
    pid: int = 0


class JobProgressUpdated(JobEvent):
    """Emitted for every normalized progress frame."""

    progress: ProgressEvent


class JobFinished(JobEvent):
    """Base class for terminal events. Always the last event for a job id."""

    outcome: Outcome


class JobCompleted(JobFinished):
    """Emitted when a job succeeds."""

    pass


class JobFailed(JobFinished):
    """Emitted when a job fails."""

    @property
    def error_message(self) -> str:
        return self.outcome.error or ""


class JobCancelled(JobFinished):
    """Emitted when a cancel request wins against natural termination."""

    pass
