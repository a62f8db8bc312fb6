"""Capability set the job coordinator needs from a compute network.

Only implementations of :class:`RemoteExecutionClient` know how the network is
reached; everything above this module works with handles, status events and
artifacts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence

from gflite.descriptors import SubtaskDescriptor


class SubtaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


ACTIVE_SUBTASK_STATES: FrozenSet[SubtaskState] = frozenset({SubtaskState.PENDING, SubtaskState.RUNNING})

REASON_PROVIDER_REJECTED = "provider_rejected"
REASON_DISCONNECTED = "disconnected"
REASON_RESTART = "restart"
REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"
REASON_COMPUTATION_ERROR = "computation_error"


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    subtask_names: Dict[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusEvent:
    ordinal: int
    state: SubtaskState
    reason: Optional[str] = None
    attempt: int = 0


@dataclass(frozen=True)
class Artifact:
    ordinal: int
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)


class RemoteExecutionClient(ABC):
    @abstractmethod
    def submit_job(self, descriptors: Sequence[SubtaskDescriptor], overall_timeout: float) -> JobHandle:
        """Create the remote task; raise ``SubmissionError`` when refused."""

    @abstractmethod
    def poll(self, handle: JobHandle) -> List[StatusEvent]:
        """Return the status events observed since the last call without blocking."""

    @abstractmethod
    def fetch_artifact(self, handle: JobHandle, ordinal: int) -> Artifact:
        """Return a succeeded subtask's output or raise ``ArtifactUnavailableError``."""

    @abstractmethod
    def cancel(self, handle: JobHandle) -> None:
        """Abort the remote task. Best effort."""

    @abstractmethod
    def resubmit(self, handle: JobHandle, descriptor: SubtaskDescriptor, attempt: int) -> None:
        """Restart one subtask; later events for its ordinal carry ``attempt``."""

    def close(self) -> None:
        return None

    def __enter__(self) -> "RemoteExecutionClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
