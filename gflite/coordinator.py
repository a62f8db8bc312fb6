"""Drive a job from submission to a terminal state.

The coordinator owns the job's status table. It polls the remote client,
applies events under the monotonicity rules, expires per-subtask deadlines,
retries transient failures within a bounded budget and decides the job's
outcome. Apart from the client interface it performs no I/O.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from gflite.descriptors import SubtaskDescriptor
from gflite.errors import (
    GFliteError,
    JobCancelledError,
    JobStateError,
    JobTimeoutError,
    PartialFailureError,
    RemoteClientError,
    SubmissionError,
    SubtaskTimeoutError,
)
from gflite.jobs import Job, JobState, ProgressEvent, SubtaskStatus
from gflite.remote import (
    ACTIVE_SUBTASK_STATES,
    REASON_COMPUTATION_ERROR,
    REASON_DISCONNECTED,
    REASON_PROVIDER_REJECTED,
    REASON_RESTART,
    REASON_TIMEOUT,
    JobHandle,
    RemoteExecutionClient,
    StatusEvent,
    SubtaskState,
)
from gflite.timeouts import format_timeout

logger = logging.getLogger(__name__)

DEFAULT_TRANSIENT_REASONS: FrozenSet[str] = frozenset(
    {REASON_PROVIDER_REJECTED, REASON_DISCONNECTED, REASON_RESTART}
)

ProgressCallback = Callable[[ProgressEvent], None]
_DeadlineEntry = Tuple[float, int, int]


@dataclass(frozen=True)
class RetryPolicy:
    """How often a failed subtask is resubmitted before the job gives up."""

    max_retries: int = 2
    transient_reasons: FrozenSet[str] = DEFAULT_TRANSIENT_REASONS
    retry_timeouts: bool = True

    def should_retry(self, status: SubtaskStatus, state: SubtaskState, reason: Optional[str]) -> bool:
        if status.retries >= self.max_retries:
            return False
        if state is SubtaskState.TIMED_OUT:
            return self.retry_timeouts
        return (reason or "").strip().lower() in self.transient_reasons


class JobCoordinator:
    def __init__(
        self,
        client: RemoteExecutionClient,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = float(poll_interval)
        self._clock = clock
        self._sleep = sleep
        self._subscribers: List[ProgressCallback] = []
        self._deadlines: List[_DeadlineEntry] = []

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def create_job(self, descriptors: Sequence[SubtaskDescriptor], overall_timeout: float) -> Job:
        if not descriptors:
            raise ValueError("a job needs at least one subtask")
        if overall_timeout <= 0:
            raise ValueError(f"overall timeout must be positive, got {overall_timeout}")
        job = Job(descriptors=list(descriptors), overall_timeout=float(overall_timeout))
        self._publish(job, None, JobState.BUILDING.value, f"Built {len(job.descriptors)} subtasks")
        return job

    def run(self, job: Job, cancel_event: Optional[threading.Event] = None) -> Job:
        """Submit ``job`` and block until it reaches a terminal state.

        Returns the job once it is ``Completed``. Every other outcome raises
        the matching :class:`~gflite.errors.GFliteError` after the job state
        has been recorded.
        """

        if job.state is not JobState.BUILDING:
            raise JobStateError(f"job {job.id} was already started ({job.state.value})")
        self._submit(job)
        try:
            return self._supervise(job, cancel_event)
        except KeyboardInterrupt:
            if not job.is_terminal:
                job.error = "interrupted"
                self._finish(job, JobState.CANCELLED, "Interrupted, cancelling task", level="warning")
                self._cancel_remote(job)
            raise

    # Submission -------------------------------------------------------

    def _submit(self, job: Job) -> None:
        self._transition(job, JobState.SUBMITTED, "Sending task to Golem")
        try:
            handle = self.client.submit_job(job.descriptors, job.overall_timeout)
        except SubmissionError as exc:
            job.error = str(exc)
            job.add_log(f"Submission failed: {exc}", level="error")
            raise
        job.handle = handle
        job.started_at = time.time()

        now = self._clock()
        self._deadlines = []
        for descriptor in job.descriptors:
            status = job.statuses[descriptor.ordinal]
            status.state = SubtaskState.PENDING
            status.deadline = now + descriptor.timeout
            heapq.heappush(self._deadlines, (status.deadline, descriptor.ordinal, status.attempt))
        self._transition(job, JobState.RUNNING, f"Task {handle.job_id} accepted with {len(job.descriptors)} subtasks")

    # Main loop ----------------------------------------------------------

    def _supervise(self, job: Job, cancel_event: Optional[threading.Event]) -> Job:
        overall_deadline = self._clock() + job.overall_timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                job.error = "cancelled on request"
                self._finish(job, JobState.CANCELLED, "Cancellation requested", level="warning")
                self._cancel_remote(job)
                raise JobCancelledError(f"task {self._remote_id(job)} was cancelled")

            self._drain(job)
            now = self._clock()
            self._expire_deadlines(job, now)

            failures: Dict[int, Optional[str]] = {
                ordinal: status.reason for ordinal, status in job.statuses.items() if status.failed_for_good
            }
            if failures:
                error = PartialFailureError(failures)
                job.error = str(error)
                self._finish(job, JobState.PARTIALLY_FAILED, str(error), level="error")
                self._cancel_remote(job)
                timed_out = [
                    ordinal
                    for ordinal in sorted(failures)
                    if job.statuses[ordinal].state is SubtaskState.TIMED_OUT
                ]
                if timed_out:
                    first = timed_out[0]
                    raise error from SubtaskTimeoutError(first, job.descriptor(first).timeout)
                raise error

            if all(status.succeeded for status in job.statuses.values()):
                self._finish(job, JobState.COMPLETED, "All subtasks finished", level="success")
                return job

            if now >= overall_deadline:
                unfinished = [ordinal for ordinal, status in job.statuses.items() if not status.succeeded]
                error = JobTimeoutError(
                    f"task {self._remote_id(job)} did not finish within {format_timeout(job.overall_timeout)}; "
                    f"{job.succeeded_count} of {len(job.statuses)} subtasks succeeded",
                    ordinals=unfinished,
                )
                job.error = str(error)
                self._finish(job, JobState.TIMED_OUT, str(error), level="error")
                self._cancel_remote(job)
                raise error

            self._sleep(self._next_delay(now, overall_deadline))

    def _next_delay(self, now: float, overall_deadline: float) -> float:
        delay = min(self.poll_interval, overall_deadline - now)
        if self._deadlines:
            delay = min(delay, self._deadlines[0][0] - now)
        return max(delay, 0.0)

    def _drain(self, job: Job) -> None:
        try:
            events = self.client.poll(self._require_handle(job))
        except RemoteClientError as exc:
            job.add_log(f"Polling failed, retrying: {exc}", level="warning")
            return
        for event in events:
            self._apply(job, event)

    def _apply(self, job: Job, event: StatusEvent) -> None:
        status = job.statuses.get(event.ordinal)
        if status is None:
            logger.debug("Ignoring event for unknown subtask %s", event.ordinal)
            return
        if status.final or event.attempt != status.attempt:
            return
        if event.state is status.state or event.state is SubtaskState.PENDING:
            return

        if event.state is SubtaskState.RUNNING:
            status.state = SubtaskState.RUNNING
            status.updated_at = time.time()
            self._publish(job, status.ordinal, status.state.value, f"Subtask {status.ordinal} running", level="debug")
        elif event.state is SubtaskState.SUCCEEDED:
            status.state = SubtaskState.SUCCEEDED
            status.final = True
            status.reason = None
            status.updated_at = time.time()
            self._publish(
                job,
                status.ordinal,
                status.state.value,
                f"Subtask {status.ordinal} finished ({job.succeeded_count}/{len(job.statuses)})",
            )
        else:
            self._handle_failure(job, status, event.state, event.reason)

    def _expire_deadlines(self, job: Job, now: float) -> None:
        while self._deadlines and self._deadlines[0][0] <= now:
            _, ordinal, attempt = heapq.heappop(self._deadlines)
            status = job.statuses[ordinal]
            if status.final or status.attempt != attempt or status.state not in ACTIVE_SUBTASK_STATES:
                continue
            self._handle_failure(job, status, SubtaskState.TIMED_OUT, REASON_TIMEOUT)

    def _handle_failure(
        self,
        job: Job,
        status: SubtaskStatus,
        state: SubtaskState,
        reason: Optional[str],
    ) -> None:
        if not reason:
            reason = REASON_TIMEOUT if state is SubtaskState.TIMED_OUT else REASON_COMPUTATION_ERROR
        status.state = state
        status.reason = reason
        status.updated_at = time.time()

        if not self.retry_policy.should_retry(status, state, reason):
            status.final = True
            self._publish(
                job,
                status.ordinal,
                state.value,
                f"Subtask {status.ordinal} {state.value} ({reason}) after {status.retries} retries",
                level="error",
            )
            return

        attempt = status.attempt + 1
        descriptor = job.descriptor(status.ordinal)
        try:
            self.client.resubmit(self._require_handle(job), descriptor, attempt)
        except GFliteError as exc:
            status.final = True
            status.reason = f"{reason}; resubmission failed: {exc}"
            self._publish(job, status.ordinal, state.value, f"Subtask {status.ordinal} could not be resubmitted: {exc}", level="error")
            return

        status.attempt = attempt
        status.retries += 1
        status.state = SubtaskState.PENDING
        status.deadline = self._clock() + descriptor.timeout
        heapq.heappush(self._deadlines, (status.deadline, status.ordinal, attempt))
        self._publish(
            job,
            status.ordinal,
            SubtaskState.PENDING.value,
            f"Subtask {status.ordinal} {state.value} ({reason}), retry {status.retries}/{self.retry_policy.max_retries}",
            level="warning",
        )

    # Terminal handling --------------------------------------------------

    def _cancel_remote(self, job: Job) -> None:
        if job.handle is None:
            return
        try:
            self.client.cancel(job.handle)
        except GFliteError as exc:
            job.add_log(f"Cancelling task {job.handle.job_id} failed: {exc}", level="warning")
        else:
            job.add_log(f"Cancelled task {job.handle.job_id}", level="debug")

    def _finish(self, job: Job, state: JobState, message: str, *, level: str = "info") -> None:
        job.finished_at = time.time()
        self._transition(job, state, message, level=level)

    def _transition(self, job: Job, state: JobState, message: str, *, level: str = "info") -> None:
        job.state = state
        self._publish(job, None, state.value, message, level=level)

    def _publish(
        self,
        job: Job,
        ordinal: Optional[int],
        state: str,
        message: str,
        *,
        level: str = "info",
    ) -> None:
        job.add_log(message, level=level)
        event = ProgressEvent(
            job_id=job.id,
            ordinal=ordinal,
            state=state,
            message=message,
            succeeded=job.succeeded_count,
            total=len(job.statuses),
        )
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Progress subscriber failed for job %s", job.id)

    @staticmethod
    def _require_handle(job: Job) -> JobHandle:
        if job.handle is None:
            raise JobStateError(f"job {job.id} has no remote task")
        return job.handle

    @staticmethod
    def _remote_id(job: Job) -> str:
        return job.handle.job_id if job.handle else job.id
