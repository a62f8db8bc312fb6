from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Tuple


class GFliteError(RuntimeError):
    """Base class for every terminal failure surfaced to callers.

    ``stage`` names the part of the conversion that failed and ``ordinals``
    lists the subtasks involved, if any.
    """

    stage = "converting"

    def __init__(self, message: str, *, ordinals: Iterable[int] = ()) -> None:
        super().__init__(message)
        self.ordinals: Tuple[int, ...] = tuple(sorted(set(int(value) for value in ordinals)))

    def describe(self) -> str:
        return f"{self.stage}: {self}"


class DocumentError(GFliteError):
    """Raised when the input document cannot be read."""

    stage = "reading input"


class EmptyInputError(GFliteError):
    """Raised when a document has no speakable content."""

    stage = "splitting input"


class SubmissionError(GFliteError):
    """Raised when the compute network is unreachable or rejects the task."""

    stage = "sending task to Golem"


class RemoteClientError(GFliteError):
    """Raised for transport failures after a task has been accepted."""

    stage = "talking to Golem"


class SubtaskTimeoutError(GFliteError):
    """Recorded when a single subtask outlives its deadline."""

    stage = "computing task on Golem"

    def __init__(self, ordinal: int, timeout: float) -> None:
        super().__init__(
            f"subtask {ordinal} did not finish within {timeout:g}s",
            ordinals=(ordinal,),
        )
        self.timeout = timeout


class JobTimeoutError(GFliteError):
    """Raised when the whole task exceeds its overall deadline."""

    stage = "computing task on Golem"


class JobCancelledError(GFliteError):
    """Raised when a running task is cancelled on request."""

    stage = "computing task on Golem"


class PartialFailureError(GFliteError):
    """Raised when at least one subtask failed for good."""

    stage = "computing task on Golem"

    def __init__(self, failures: Mapping[int, Optional[str]]) -> None:
        self.failures: Dict[int, str] = {
            int(ordinal): str(reason or "unknown failure") for ordinal, reason in failures.items()
        }
        details = ", ".join(
            f"subtask {ordinal} ({reason})" for ordinal, reason in sorted(self.failures.items())
        )
        super().__init__(f"giving up on {details}", ordinals=self.failures.keys())


class ArtifactUnavailableError(GFliteError):
    """Raised when an artifact is requested before its subtask succeeded."""

    stage = "fetching subtask output"


class IncompleteResultError(GFliteError):
    """Raised when a completed task is missing an artifact during assembly."""

    stage = "combining output"


class AudioFormatError(GFliteError):
    """Raised when subtask outputs cannot be joined without re-encoding."""

    stage = "combining output"


class JobStateError(GFliteError):
    """Raised when an operation is attempted in the wrong job state."""

    stage = "checking job state"
