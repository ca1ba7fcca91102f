"""Error taxonomy for the transcode core.

Probe and invocation errors are reported to the caller of the failing
operation. Engine runtime errors normally surface as a failed Outcome.
Registry consistency errors indicate a caller-side bug and propagate.
"""


class VtcError(Exception):
    """Base class for all VTC errors."""


class ProbeError(VtcError):
    """Input is missing, unreadable, or not a media container ffprobe understands."""


class InvocationError(VtcError):
    """Request options are invalid. Raised before any process is spawned."""


class EngineRuntimeError(VtcError):
    """The engine could not be started, or it exited with an error."""


class RegistryConsistencyError(VtcError):
    """The job registry was asked to do something that breaks its invariants."""


class DuplicateJobError(RegistryConsistencyError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id!r} is already registered")
        self.job_id = job_id
