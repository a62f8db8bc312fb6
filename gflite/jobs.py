from __future__ import annotations

import logging
import sys
import time
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence

from gflite.descriptors import SubtaskDescriptor
from gflite.remote import JobHandle, SubtaskState

_JOB_LOGGER = logging.getLogger("gflite.jobs")
if not _JOB_LOGGER.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    _JOB_LOGGER.addHandler(handler)
    _JOB_LOGGER.propagate = False
_JOB_LOGGER.setLevel(logging.INFO)

_JOB_LEVEL_MAP: Dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "success": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def emit_job_log(job_id: str, level: str, message: str) -> None:
    normalized = (level or "info").lower()
    log_level = _JOB_LEVEL_MAP.get(normalized, logging.INFO)
    try:
        _JOB_LOGGER.log(log_level, "[job %s] %s", job_id, message)
    except Exception:
        try:
            sys.stderr.write(f"Logging failed for job {job_id}: {message}\n")
            traceback.print_exc(file=sys.stderr)
        except Exception:
            pass


class JobState(str, Enum):
    BUILDING = "building"
    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATES: FrozenSet[JobState] = frozenset(
    {JobState.COMPLETED, JobState.PARTIALLY_FAILED, JobState.TIMED_OUT, JobState.CANCELLED}
)


@dataclass
class JobLog:
    timestamp: float
    message: str
    level: str = "info"


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    ordinal: Optional[int]
    state: str
    message: str
    succeeded: int = 0
    total: int = 0
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "ordinal": self.ordinal,
            "state": self.state,
            "message": self.message,
            "succeeded": self.succeeded,
            "total": self.total,
            "timestamp": self.timestamp,
        }


@dataclass
class SubtaskStatus:
    ordinal: int
    state: SubtaskState = SubtaskState.PENDING
    attempt: int = 0
    retries: int = 0
    reason: Optional[str] = None
    final: bool = False
    deadline: Optional[float] = None
    updated_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.state is SubtaskState.SUCCEEDED

    @property
    def failed_for_good(self) -> bool:
        return self.final and not self.succeeded

    def as_dict(self) -> Dict[str, object]:
        return {
            "ordinal": self.ordinal,
            "state": self.state.value,
            "attempt": self.attempt,
            "retries": self.retries,
            "reason": self.reason,
            "final": self.final,
        }


@dataclass
class Job:
    descriptors: List[SubtaskDescriptor]
    overall_timeout: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.BUILDING
    handle: Optional[JobHandle] = None
    statuses: Dict[int, SubtaskStatus] = field(default_factory=dict)
    logs: List[JobLog] = field(default_factory=list)
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.statuses:
            self.statuses = {
                descriptor.ordinal: SubtaskStatus(ordinal=descriptor.ordinal) for descriptor in self.descriptors
            }

    @property
    def ordinals(self) -> Sequence[int]:
        return [descriptor.ordinal for descriptor in self.descriptors]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    @property
    def succeeded_count(self) -> int:
        return sum(1 for status in self.statuses.values() if status.succeeded)

    @property
    def progress(self) -> float:
        if not self.statuses:
            return 0.0
        return self.succeeded_count / len(self.statuses)

    def descriptor(self, ordinal: int) -> SubtaskDescriptor:
        return self.descriptors[ordinal]

    def add_log(self, message: str, level: str = "info") -> None:
        entry = JobLog(timestamp=time.time(), message=message, level=level)
        self.logs.append(entry)
        emit_job_log(self.id, level, message)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "state": self.state.value,
            "remote_id": self.handle.job_id if self.handle else None,
            "overall_timeout": self.overall_timeout,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "progress": self.progress,
            "error": self.error,
            "subtasks": [self.statuses[ordinal].as_dict() for ordinal in sorted(self.statuses)],
            "logs": [log.__dict__ for log in self.logs],
        }
