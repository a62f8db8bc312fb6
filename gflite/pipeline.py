from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from gflite import chunking, descriptors
from gflite.assembler import AssembledOutput, assemble
from gflite.coordinator import JobCoordinator, ProgressCallback, RetryPolicy
from gflite.jobs import Job, JobState, ProgressEvent
from gflite.remote import RemoteExecutionClient
from gflite.utils import read_document

logger = logging.getLogger(__name__)

TOTAL_STEPS = 4
WORKSPACE_PREFIX = "g_flite"

StepCallback = Callable[[int, str], None]


@dataclass(frozen=True)
class ConversionRequest:
    input_path: Path
    output_path: Path
    subtasks: int = 6
    bid: Decimal = Decimal("1.0")
    task_timeout: float = 600.0
    subtask_timeout: float = 60.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    poll_interval: float = 1.0
    fetch_workers: int = 4


@dataclass
class ConversionResult:
    output: AssembledOutput
    job: Job
    chunk_count: int

    @property
    def output_path(self) -> Path:
        return self.output.path


def format_step(step: int, message: str) -> str:
    return f"[{step}/{TOTAL_STEPS}] {message}"


@contextmanager
def open_workspace(path: Optional[Union[str, Path]] = None) -> Iterator[Path]:
    """Yield the task workspace.

    A user-supplied directory is created if needed and kept afterwards; without
    one a temporary directory is used and removed on exit.
    """

    if path:
        workspace = Path(path).expanduser()
        workspace.mkdir(parents=True, exist_ok=True)
        logger.info("Using workspace %s", workspace)
        yield workspace
        return
    temp_dir = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX))
    logger.info("Using temporary workspace %s", temp_dir)
    try:
        yield temp_dir
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def run_conversion(
    request: ConversionRequest,
    client: RemoteExecutionClient,
    *,
    on_step: Optional[StepCallback] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> ConversionResult:
    """Turn the request's input document into one WAV file.

    Either the output file is written or exactly one ``GFliteError`` is
    raised naming the stage that failed.
    """

    def _step(step: int, message: str) -> None:
        logger.info(format_step(step, message))
        if on_step is not None:
            on_step(step, message)

    document = read_document(request.input_path)

    _step(1, f"Splitting '{request.input_path}' into {request.subtasks} Golem subtasks...")
    chunks = chunking.split(document, request.subtasks)
    if len(chunks) < request.subtasks:
        logger.info("Input only allows %d subtasks", len(chunks))
    work = descriptors.build(chunks, request.subtask_timeout, request.bid)

    coordinator_options = {}
    if clock is not None:
        coordinator_options["clock"] = clock
    if sleep is not None:
        coordinator_options["sleep"] = sleep
    coordinator = JobCoordinator(
        client,
        retry_policy=request.retry_policy,
        poll_interval=request.poll_interval,
        **coordinator_options,
    )

    def _on_transition(event: ProgressEvent) -> None:
        if event.ordinal is None and event.state == JobState.RUNNING.value:
            _step(3, "Waiting on compute to finish...")

    coordinator.subscribe(_on_transition)
    if on_progress is not None:
        coordinator.subscribe(on_progress)
    job = coordinator.create_job(work, request.task_timeout)

    _step(2, "Sending task to Golem...")
    coordinator.run(job, cancel_event=cancel_event)

    _step(4, f"Combining output into '{request.output_path}'...")
    output = assemble(job, client, request.output_path, max_workers=request.fetch_workers)
    return ConversionResult(output=output, job=job, chunk_count=len(chunks))
