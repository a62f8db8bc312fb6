from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Type

import httpx

from gflite.descriptors import SubtaskDescriptor
from gflite.errors import ArtifactUnavailableError, GFliteError, RemoteClientError, SubmissionError
from gflite.remote import (
    REASON_CANCELLED,
    REASON_COMPUTATION_ERROR,
    REASON_RESTART,
    Artifact,
    JobHandle,
    RemoteExecutionClient,
    StatusEvent,
    SubtaskState,
)
from gflite.timeouts import format_timeout
from gflite.utils import default_golem_datadir

logger = logging.getLogger(__name__)

TASK_NAME = "g_flite"
KERNEL_JS_NAME = "flite.js"
KERNEL_WASM_NAME = "flite.wasm"
INPUT_NAME = "in.txt"
OUTPUT_NAME = "in.wav"

_SUBTASK_NAME_RE = re.compile(r"^subtask(\d+)$")

_STATUS_MAP: Dict[str, SubtaskState] = {
    "waiting": SubtaskState.PENDING,
    "starting": SubtaskState.RUNNING,
    "downloading": SubtaskState.RUNNING,
    "verifying": SubtaskState.RUNNING,
    "finished": SubtaskState.SUCCEEDED,
    "failure": SubtaskState.FAILED,
    "restart": SubtaskState.FAILED,
    "timeout": SubtaskState.TIMED_OUT,
    "cancelled": SubtaskState.FAILED,
}


@dataclass(frozen=True)
class GolemConfig:
    address: str = "127.0.0.1"
    port: int = 61000
    datadir: Optional[Path] = None
    mainnet: bool = False
    auth_id: str = "golemcli"
    verify_ssl: bool = False
    timeout: float = 30.0
    budget: Optional[Decimal] = None
    kernel_js: Optional[Path] = None
    kernel_wasm: Optional[Path] = None

    @property
    def net(self) -> str:
        return "mainnet" if self.mainnet else "rinkeby"

    def network_datadir(self) -> Path:
        base = Path(self.datadir) if self.datadir else default_golem_datadir()
        return base / self.net

    def secret_path(self) -> Path:
        return self.network_datadir() / "crossbar" / "secrets" / f"{self.auth_id}.tck"

    def base_url(self) -> str:
        address = (self.address or "").strip()
        if not address:
            raise ValueError("Golem RPC address is required")
        return f"https://{address}:{int(self.port)}/"


@dataclass
class _TaskState:
    out_dir: Path
    in_dir: Path
    descriptors: Dict[int, SubtaskDescriptor]
    subtask_ids: Dict[int, str] = field(default_factory=dict)
    last_status: Dict[int, str] = field(default_factory=dict)
    markers: Dict[int, str] = field(default_factory=dict)
    restarting: Set[int] = field(default_factory=set)
    stale_markers: Dict[int, str] = field(default_factory=dict)
    attempts: Dict[int, int] = field(default_factory=dict)
    succeeded: Set[int] = field(default_factory=set)
    cancelled: bool = False


class GolemClient(RemoteExecutionClient):
    """Talk to a local Golem agent over its JSON RPC endpoint.

    Subtask inputs live in ``<workspace>/in/subtask<N>/in.txt`` and the agent
    writes each output to ``<workspace>/out/subtask<N>/in.wav``.
    """

    def __init__(
        self,
        config: GolemConfig,
        workspace: Path,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._config = config
        self._workspace = Path(workspace)
        self._transport = transport
        self._tasks: Dict[str, _TaskState] = {}

    @property
    def config(self) -> GolemConfig:
        return self._config

    @property
    def workspace(self) -> Path:
        return self._workspace

    # RPC plumbing -------------------------------------------------------

    def _read_secret(self, error: Type[GFliteError]) -> str:
        path = self._config.secret_path()
        try:
            secret = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise error(f"reading Golem auth secret '{path}': {exc}") from exc
        if not secret:
            raise error(f"Golem auth secret '{path}' is empty")
        return secret

    def _open_client(self, error: Type[GFliteError]) -> httpx.Client:
        headers = {
            "Authorization": f"Bearer {self._read_secret(error)}",
            "Accept": "application/json",
        }
        return httpx.Client(
            base_url=self._config.base_url(),
            headers=headers,
            timeout=self._config.timeout,
            verify=self._config.verify_ssl,
            transport=self._transport,
        )

    def _call(
        self,
        procedure: str,
        args: Sequence[Any],
        *,
        error: Type[GFliteError] = RemoteClientError,
    ) -> Any:
        payload = {"procedure": procedure, "args": list(args)}
        try:
            with self._open_client(error) as client:
                response = client.post("rpc", json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = (exc.response.text or "").strip()
            if detail:
                message = f"{procedure} failed with status {status}: {detail[:200]}"
            else:
                message = f"{procedure} failed with status {status}"
            raise error(message) from exc
        except httpx.HTTPError as exc:
            raise error(f"{procedure} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise error(f"{procedure} returned invalid JSON: {exc}") from exc
        if not isinstance(body, Mapping):
            raise error(f"{procedure} returned an unexpected payload")
        if body.get("error"):
            raise error(f"{procedure} failed: {body['error']}")
        return body.get("result")

    # Task preparation ---------------------------------------------------

    def _check_kernels(self) -> None:
        kernels = (
            (KERNEL_JS_NAME, "kernel_js", self._config.kernel_js),
            (KERNEL_WASM_NAME, "kernel_wasm", self._config.kernel_wasm),
        )
        for name, setting, path in kernels:
            if not path:
                raise SubmissionError(f"{name} kernel is not configured; set {setting}")
            if not Path(path).is_file():
                raise SubmissionError(f"{name} kernel '{path}' is missing")

    def _prepare_workspace(self, descriptors: Sequence[SubtaskDescriptor]) -> _TaskState:
        in_dir = self._workspace / "in"
        out_dir = self._workspace / "out"
        in_dir.mkdir(parents=True, exist_ok=True)
        out_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self._config.kernel_js, in_dir / KERNEL_JS_NAME)
        shutil.copyfile(self._config.kernel_wasm, in_dir / KERNEL_WASM_NAME)
        for descriptor in descriptors:
            subtask_in = in_dir / descriptor.name
            subtask_in.mkdir(exist_ok=True)
            (subtask_in / INPUT_NAME).write_text(descriptor.payload.text, encoding="utf-8")
            (out_dir / descriptor.name).mkdir(exist_ok=True)
        return _TaskState(
            out_dir=out_dir,
            in_dir=in_dir,
            descriptors={descriptor.ordinal: descriptor for descriptor in descriptors},
            attempts={descriptor.ordinal: 0 for descriptor in descriptors},
        )

    def build_task_definition(
        self,
        descriptors: Sequence[SubtaskDescriptor],
        overall_timeout: float,
    ) -> Dict[str, Any]:
        subtask_timeout = max(descriptor.timeout for descriptor in descriptors)
        definition: Dict[str, Any] = {
            "type": "wasm",
            "name": TASK_NAME,
            "bid": float(descriptors[0].bid),
            "timeout": format_timeout(overall_timeout),
            "subtask_timeout": format_timeout(subtask_timeout),
            "options": {
                "js_name": KERNEL_JS_NAME,
                "wasm_name": KERNEL_WASM_NAME,
                "input_dir": str(self._workspace / "in"),
                "output_dir": str(self._workspace / "out"),
                "subtasks": {
                    descriptor.name: {
                        "exec_args": [INPUT_NAME, OUTPUT_NAME],
                        "output_file_paths": [OUTPUT_NAME],
                    }
                    for descriptor in descriptors
                },
            },
        }
        if self._config.budget is not None:
            definition["budget"] = float(self._config.budget)
        return definition

    # RemoteExecutionClient ----------------------------------------------

    def submit_job(self, descriptors: Sequence[SubtaskDescriptor], overall_timeout: float) -> JobHandle:
        if not descriptors:
            raise SubmissionError("cannot submit a task without subtasks")
        self._check_kernels()
        try:
            state = self._prepare_workspace(descriptors)
        except OSError as exc:
            raise SubmissionError(f"preparing task in '{self._workspace}': {exc}") from exc

        definition = self.build_task_definition(descriptors, overall_timeout)
        logger.debug("Creating Golem task %s", definition)
        result = self._call("comp.task.create", [definition], error=SubmissionError)

        task_id, create_error = _unpack_create_result(result)
        if create_error:
            raise SubmissionError(f"Golem rejected the task: {create_error}")
        if not task_id:
            raise SubmissionError("Golem did not return a task id")

        self._tasks[task_id] = state
        logger.info("Created Golem task %s with %d subtasks", task_id, len(descriptors))
        return JobHandle(
            job_id=task_id,
            subtask_names={descriptor.ordinal: descriptor.name for descriptor in descriptors},
        )

    def poll(self, handle: JobHandle) -> List[StatusEvent]:
        state = self._task(handle, RemoteClientError)
        result = self._call("comp.task.subtasks", [handle.job_id])
        events: List[StatusEvent] = []
        for position, entry in enumerate(_as_entries(result)):
            ordinal = _entry_ordinal(entry, position)
            if ordinal is None or ordinal not in state.descriptors:
                logger.debug("Ignoring unknown subtask entry %s", entry)
                continue
            subtask_id = entry.get("subtask_id")
            if subtask_id:
                state.subtask_ids[ordinal] = str(subtask_id)

            raw_status = str(entry.get("status") or "").strip()
            key = raw_status.lower()
            marker = _entry_marker(entry)
            if marker is not None:
                state.markers[ordinal] = marker
            if ordinal in state.restarting:
                # Skip the restart echo and the replaced attempt's record.
                if key == "restart":
                    state.stale_markers.pop(ordinal, None)
                    continue
                stale = state.stale_markers.get(ordinal)
                if stale is not None and marker == stale:
                    continue
                state.restarting.discard(ordinal)
                state.stale_markers.pop(ordinal, None)
            if state.last_status.get(ordinal) == key:
                continue
            state.last_status[ordinal] = key

            mapped = _STATUS_MAP.get(key)
            if mapped is None:
                logger.debug("Unrecognized status %r for subtask %d", raw_status, ordinal)
                continue
            if mapped is SubtaskState.SUCCEEDED:
                if state.cancelled:
                    continue
                state.succeeded.add(ordinal)
            events.append(
                StatusEvent(
                    ordinal=ordinal,
                    state=mapped,
                    reason=_status_reason(key, entry),
                    attempt=state.attempts.get(ordinal, 0),
                )
            )
        return events

    def fetch_artifact(self, handle: JobHandle, ordinal: int) -> Artifact:
        state = self._task(handle, ArtifactUnavailableError)
        if ordinal not in state.succeeded:
            raise ArtifactUnavailableError(
                f"subtask {ordinal} of task {handle.job_id} has not finished", ordinals=(ordinal,)
            )
        descriptor = state.descriptors[ordinal]
        path = state.out_dir / descriptor.name / OUTPUT_NAME
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ArtifactUnavailableError(
                f"reading output of subtask {ordinal} from '{path}': {exc}", ordinals=(ordinal,)
            ) from exc
        return Artifact(ordinal=ordinal, data=data)

    def cancel(self, handle: JobHandle) -> None:
        state = self._tasks.get(handle.job_id)
        if state is not None:
            state.cancelled = True
        self._call("comp.task.abort", [handle.job_id])
        logger.info("Aborted Golem task %s", handle.job_id)

    def resubmit(self, handle: JobHandle, descriptor: SubtaskDescriptor, attempt: int) -> None:
        state = self._task(handle, RemoteClientError)
        ordinal = descriptor.ordinal
        subtask_id = state.subtask_ids.get(ordinal)
        if not subtask_id:
            raise RemoteClientError(
                f"no Golem subtask id known for subtask {ordinal}", ordinals=(ordinal,)
            )
        try:
            (state.in_dir / descriptor.name / INPUT_NAME).write_text(descriptor.payload.text, encoding="utf-8")
            (state.out_dir / descriptor.name / OUTPUT_NAME).unlink(missing_ok=True)
        except OSError as exc:
            raise RemoteClientError(f"resetting subtask {ordinal}: {exc}", ordinals=(ordinal,)) from exc

        self._call("comp.task.subtask.restart", [subtask_id])
        state.attempts[ordinal] = attempt
        state.succeeded.discard(ordinal)
        state.restarting.add(ordinal)
        marker = state.markers.get(ordinal)
        if marker is not None:
            state.stale_markers[ordinal] = marker
        state.last_status.pop(ordinal, None)
        logger.info("Restarted subtask %d of task %s (attempt %d)", ordinal, handle.job_id, attempt)

    def close(self) -> None:
        self._tasks.clear()

    def _task(self, handle: JobHandle, error: Type[GFliteError]) -> _TaskState:
        state = self._tasks.get(handle.job_id)
        if state is None:
            raise error(f"unknown Golem task {handle.job_id}")
        return state


def _unpack_create_result(result: Any) -> tuple[Optional[str], Optional[str]]:
    if isinstance(result, str):
        return result, None
    if isinstance(result, (list, tuple)):
        task_id = result[0] if result else None
        create_error = result[1] if len(result) > 1 else None
        return (str(task_id) if task_id else None), (str(create_error) if create_error else None)
    if isinstance(result, Mapping):
        task_id = result.get("task_id")
        create_error = result.get("error")
        return (str(task_id) if task_id else None), (str(create_error) if create_error else None)
    return None, None


def _as_entries(result: Any) -> Iterable[Mapping[str, Any]]:
    if not isinstance(result, list):
        raise RemoteClientError("comp.task.subtasks returned an unexpected payload")
    return [entry for entry in result if isinstance(entry, Mapping)]


def _entry_ordinal(entry: Mapping[str, Any], position: int) -> Optional[int]:
    name = entry.get("name")
    if name:
        match = _SUBTASK_NAME_RE.match(str(name).strip())
        return int(match.group(1)) if match else None
    return position


def _entry_marker(entry: Mapping[str, Any]) -> Optional[str]:
    for key in ("time_started", "updated_at"):
        value = entry.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _status_reason(key: str, entry: Mapping[str, Any]) -> Optional[str]:
    if key == "restart":
        return REASON_RESTART
    if key == "cancelled":
        return REASON_CANCELLED
    if key == "failure":
        reason = str(entry.get("reason") or "").strip().lower()
        return reason or REASON_COMPUTATION_ERROR
    return None
