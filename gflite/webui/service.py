from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from gflite.errors import GFliteError, JobCancelledError
from gflite.jobs import JobLog, ProgressEvent, emit_job_log
from gflite.utils import get_user_settings_dir

_SERVICE_LOGGER = logging.getLogger("gflite.webui")


class ConversionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = {ConversionStatus.COMPLETED, ConversionStatus.FAILED, ConversionStatus.CANCELLED}


@dataclass
class ConversionJob:
    id: str
    original_filename: str
    stored_path: Path
    output_path: Path
    options: Dict[str, Any]
    created_at: float
    status: ConversionStatus = ConversionStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    progress: float = 0.0
    subtasks_total: int = 0
    subtasks_done: int = 0
    remote_id: Optional[str] = None
    logs: List[JobLog] = field(default_factory=list)
    error: Optional[str] = None
    failed_ordinals: List[int] = field(default_factory=list)
    queue_position: Optional[int] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def add_log(self, message: str, level: str = "info") -> None:
        entry = JobLog(timestamp=time.time(), message=message, level=level)
        self.logs.append(entry)
        emit_job_log(self.id, level, message)

    def record_progress(self, event: ProgressEvent) -> None:
        self.subtasks_total = event.total
        self.subtasks_done = event.succeeded
        if event.total:
            self.progress = event.succeeded / event.total

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "original_filename": self.original_filename,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "progress": self.progress,
            "subtasks": {"total": self.subtasks_total, "done": self.subtasks_done},
            "remote_id": self.remote_id,
            "error": self.error,
            "failed_subtasks": list(self.failed_ordinals),
            "queue_position": self.queue_position,
            "options": dict(self.options),
            "output": self.output_path.name if self.status == ConversionStatus.COMPLETED else None,
            "logs": [log.__dict__ for log in self.logs],
        }


class ConversionService:
    def __init__(
        self,
        output_root: Path,
        runner: Callable[[ConversionJob], None],
        *,
        uploads_root: Optional[Path] = None,
        poll_interval: float = 0.5,
    ) -> None:
        self._jobs: Dict[str, ConversionJob] = {}
        self._queue: List[str] = []
        self._lock = threading.RLock()
        self._worker_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._output_root = output_root
        self._uploads_root = uploads_root or output_root / "uploads"
        self._runner = runner
        self._poll_interval = poll_interval
        self._ensure_directories()

    @property
    def output_root(self) -> Path:
        return self._output_root

    @property
    def uploads_root(self) -> Path:
        return self._uploads_root

    # Public API ---------------------------------------------------------
    def list_jobs(self) -> List[ConversionJob]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)

    def get_job(self, job_id: str) -> Optional[ConversionJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def enqueue(
        self,
        *,
        original_filename: str,
        stored_path: Path,
        options: Optional[Mapping[str, Any]] = None,
    ) -> ConversionJob:
        job_id = uuid.uuid4().hex
        stem = Path(original_filename).stem or "speech"
        job = ConversionJob(
            id=job_id,
            original_filename=original_filename,
            stored_path=stored_path,
            output_path=self._output_root / f"{stem}-{job_id[:8]}.wav",
            options={key: value for key, value in (options or {}).items() if value is not None},
            created_at=time.time(),
        )
        with self._lock:
            self._jobs[job_id] = job
            self._queue.append(job_id)
            self._update_queue_positions_locked()
        job.add_log(f"Queued {original_filename}")
        self._ensure_worker()
        self._wake_event.set()
        return job

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status in FINISHED_STATUSES:
                return False
            job.cancel_event.set()
            job.add_log("Cancellation requested", level="warning")
            if job.status == ConversionStatus.PENDING:
                job.status = ConversionStatus.CANCELLED
                job.finished_at = time.time()
                if job_id in self._queue:
                    self._queue.remove(job_id)
                self._update_queue_positions_locked()
            return True

    def wait(self, job_id: str, timeout: float = 10.0) -> Optional[ConversionJob]:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            job = self.get_job(job_id)
            if job is None or job.status in FINISHED_STATUSES:
                return job
            time.sleep(0.01)
        return self.get_job(job_id)

    def shutdown(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_thread.join(timeout=5)
            self._worker_thread = None

    # Internal -----------------------------------------------------------
    def _ensure_directories(self) -> None:
        self._output_root.mkdir(parents=True, exist_ok=True)
        self._uploads_root.mkdir(parents=True, exist_ok=True)

    def _update_queue_positions_locked(self) -> None:
        for job in self._jobs.values():
            job.queue_position = None
        for index, job_id in enumerate(self._queue, start=1):
            self._jobs[job_id].queue_position = index

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker_thread and self._worker_thread.is_alive():
                return
            self._stop_event.clear()
            self._worker_thread = threading.Thread(
                target=self._worker_loop,
                name="gflite-conversion-worker",
                daemon=True,
            )
            self._worker_thread.start()

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            job = None
            with self._lock:
                self._wake_event.clear()
                while self._queue and self._jobs[self._queue[0]].status in FINISHED_STATUSES:
                    self._queue.pop(0)
                if self._queue:
                    job = self._jobs[self._queue.pop(0)]
                self._update_queue_positions_locked()
            if job is None:
                self._wake_event.wait(timeout=self._poll_interval)
                continue
            self._run_job(job)

    def _run_job(self, job: ConversionJob) -> None:
        job.status = ConversionStatus.RUNNING
        job.started_at = time.time()
        job.add_log("Job started")
        try:
            self._runner(job)
        except JobCancelledError as exc:
            job.error = str(exc)
            job.status = ConversionStatus.CANCELLED
            job.add_log("Job cancelled", level="warning")
        except GFliteError as exc:
            job.error = f"An error occurred while {exc.describe()}"
            job.failed_ordinals = list(exc.ordinals)
            job.status = ConversionStatus.FAILED
            job.add_log(job.error, level="error")
        except ValueError as exc:
            job.error = f"An error occurred while reading settings: {exc}"
            job.status = ConversionStatus.FAILED
            job.add_log(job.error, level="error")
        except Exception as exc:  # pragma: no cover - defensive
            job.error = str(exc)
            job.status = ConversionStatus.FAILED
            job.add_log(f"Unexpected error: {exc}", level="error")
            _SERVICE_LOGGER.exception("Conversion job %s crashed", job.id)
        else:
            job.progress = 1.0
            job.status = ConversionStatus.COMPLETED
            job.add_log("Job completed", level="success")
        finally:
            job.finished_at = time.time()


def default_storage_root() -> Path:
    base = Path(get_user_settings_dir()) / "web"
    outputs = base / "outputs"
    outputs.mkdir(parents=True, exist_ok=True)
    return outputs


def build_service(
    runner: Callable[[ConversionJob], None],
    *,
    output_root: Optional[Path] = None,
    uploads_root: Optional[Path] = None,
) -> ConversionService:
    output_root = output_root or default_storage_root()
    return ConversionService(
        output_root=output_root,
        uploads_root=uploads_root,
        runner=runner,
    )
