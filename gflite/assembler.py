from __future__ import annotations

import io
import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple, Union

import numpy as np
import soundfile as sf

from gflite.errors import AudioFormatError, GFliteError, IncompleteResultError, JobStateError
from gflite.jobs import Job, JobState
from gflite.remote import Artifact, JobHandle, RemoteExecutionClient

logger = logging.getLogger(__name__)

_SUBTYPE_DTYPES: Dict[str, str] = {
    "PCM_S8": "int16",
    "PCM_U8": "int16",
    "PCM_16": "int16",
    "PCM_24": "int32",
    "PCM_32": "int32",
    "FLOAT": "float32",
    "DOUBLE": "float64",
}


@dataclass(frozen=True)
class AssembledOutput:
    path: Path
    fragments: int
    frames: int
    samplerate: int
    channels: int
    subtype: str

    @property
    def duration(self) -> float:
        return self.frames / self.samplerate if self.samplerate else 0.0


@dataclass(frozen=True)
class _Fragment:
    ordinal: int
    samples: np.ndarray
    samplerate: int
    channels: int
    subtype: str

    @property
    def audio_format(self) -> Tuple[int, int, str]:
        return self.samplerate, self.channels, self.subtype


def _fetch(client: RemoteExecutionClient, handle: JobHandle, ordinal: int) -> Artifact:
    try:
        artifact = client.fetch_artifact(handle, ordinal)
    except GFliteError as exc:
        raise IncompleteResultError(
            f"missing output of subtask {ordinal}: {exc}", ordinals=(ordinal,)
        ) from exc
    if artifact.ordinal != ordinal:
        raise IncompleteResultError(
            f"expected output of subtask {ordinal}, got subtask {artifact.ordinal}", ordinals=(ordinal,)
        )
    return artifact


def _decode(artifact: Artifact) -> _Fragment:
    try:
        info = sf.info(io.BytesIO(artifact.data))
        dtype = _SUBTYPE_DTYPES.get(info.subtype, "float64")
        samples, samplerate = sf.read(io.BytesIO(artifact.data), dtype=dtype, always_2d=True)
    except RuntimeError as exc:
        raise AudioFormatError(
            f"reading audio from subtask {artifact.ordinal}: {exc}", ordinals=(artifact.ordinal,)
        ) from exc
    return _Fragment(
        ordinal=artifact.ordinal,
        samples=samples,
        samplerate=samplerate,
        channels=info.channels,
        subtype=info.subtype,
    )


def _write_atomically(path: Path, fragments: List[_Fragment]) -> int:
    first = fragments[0]
    handle, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".part", dir=str(path.parent))
    os.close(handle)
    temp_path = Path(temp_name)
    frames = 0
    try:
        with ExitStack() as stack:
            sink = stack.enter_context(
                sf.SoundFile(
                    str(temp_path),
                    mode="w",
                    samplerate=first.samplerate,
                    channels=first.channels,
                    subtype=first.subtype,
                    format="WAV",
                )
            )
            for fragment in fragments:
                sink.write(fragment.samples)
                frames += len(fragment.samples)
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return frames


def assemble(
    job: Job,
    client: RemoteExecutionClient,
    output_path: Union[str, Path],
    *,
    max_workers: int = 4,
) -> AssembledOutput:
    """Join every subtask's WAV output, in ordinal order, into ``output_path``.

    Fragments are fetched concurrently but consumed strictly by ordinal. The
    file appears only once every fragment has been decoded and written;
    otherwise nothing is left behind.
    """

    if job.state is not JobState.COMPLETED:
        raise JobStateError(f"job {job.id} is {job.state.value}, not completed")
    handle = job.handle
    if handle is None:
        raise JobStateError(f"job {job.id} has no remote task")
    if not job.descriptors:
        raise JobStateError(f"job {job.id} has no subtasks")

    target = Path(output_path)
    ordinals = sorted(job.statuses)
    expected = list(range(len(job.descriptors)))
    if ordinals != expected:
        missing = sorted(set(expected) - set(ordinals))
        raise IncompleteResultError(f"job {job.id} has no status for subtasks {missing}", ordinals=missing)

    workers = max(1, min(int(max_workers), len(ordinals)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gflite-fetch") as pool:
        artifacts = list(pool.map(lambda ordinal: _fetch(client, handle, ordinal), ordinals))

    fragments = [_decode(artifact) for artifact in artifacts]
    reference = fragments[0]
    for fragment in fragments[1:]:
        if fragment.audio_format != reference.audio_format:
            raise AudioFormatError(
                f"subtask {fragment.ordinal} audio is {fragment.audio_format}, expected {reference.audio_format}",
                ordinals=(fragment.ordinal,),
            )

    try:
        frames = _write_atomically(target, fragments)
    except (OSError, RuntimeError) as exc:
        raise AudioFormatError(f"writing '{target}': {exc}") from exc

    job.add_log(f"Combined {len(fragments)} fragments into {target}", level="success")
    logger.info("Wrote %d frames to %s", frames, target)
    return AssembledOutput(
        path=target,
        fragments=len(fragments),
        frames=frames,
        samplerate=reference.samplerate,
        channels=reference.channels,
        subtype=reference.subtype,
    )
