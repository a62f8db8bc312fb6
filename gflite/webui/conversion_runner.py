from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from gflite.integrations.golem import GolemClient, GolemConfig
from gflite.pipeline import ConversionRequest, format_step, open_workspace, run_conversion
from gflite.remote import RemoteExecutionClient
from gflite.settings import (
    apply_overrides,
    build_golem_config,
    build_retry_policy,
    get_runtime_settings,
    resolve_bid,
    resolve_timeouts,
)
from gflite.webui.service import ConversionJob

ClientFactory = Callable[[GolemConfig, Path], RemoteExecutionClient]


def build_request(job: ConversionJob, settings: Mapping[str, Any]) -> ConversionRequest:
    task_timeout, subtask_timeout = resolve_timeouts(settings)
    return ConversionRequest(
        input_path=job.stored_path,
        output_path=job.output_path,
        subtasks=int(settings["subtasks"]),
        bid=resolve_bid(settings),
        task_timeout=task_timeout,
        subtask_timeout=subtask_timeout,
        retry_policy=build_retry_policy(settings),
        poll_interval=float(settings["poll_interval"]),
        fetch_workers=int(settings["fetch_workers"]),
    )


def run_conversion_job(job: ConversionJob, client_factory: ClientFactory = GolemClient) -> None:
    settings: Dict[str, Any] = apply_overrides(get_runtime_settings(), job.options)
    request = build_request(job, settings)
    config = build_golem_config(settings)

    with open_workspace(None) as workspace:
        with client_factory(config, workspace) as client:
            result = run_conversion(
                request,
                client,
                on_step=lambda step, message: job.add_log(format_step(step, message)),
                on_progress=job.record_progress,
                cancel_event=job.cancel_event,
            )
    if result.job.handle is not None:
        job.remote_id = result.job.handle.job_id
    job.add_log(f"Wrote {result.output.frames} frames from {result.chunk_count} subtasks", level="success")
