import json
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Mapping

from flask import Blueprint, Response, abort, current_app, jsonify, request, send_file
from flask.typing import ResponseReturnValue
from werkzeug.utils import secure_filename

from gflite.settings import parse_decimal
from gflite.timeouts import parse_timeout
from gflite.webui.service import FINISHED_STATUSES, ConversionService, ConversionStatus

api_bp = Blueprint("api", __name__)

_INT_OPTIONS = ("subtasks", "max_retries")
_DECIMAL_OPTIONS = ("bid", "budget")
_TIMEOUT_OPTIONS = ("task_timeout", "subtask_timeout")


def get_service() -> ConversionService:
    return current_app.extensions["conversion_service"]


def _error(message: str, status: int = 400) -> ResponseReturnValue:
    return jsonify({"error": message}), status


def _parse_options(source: Mapping[str, Any]) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    for key in _INT_OPTIONS:
        raw = source.get(key)
        if raw in (None, ""):
            continue
        try:
            value = int(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{key} must be an integer, got '{raw}'") from exc
        minimum = 1 if key == "subtasks" else 0
        if value < minimum:
            raise ValueError(f"{key} must be at least {minimum}, got {value}")
        options[key] = value
    for key in _DECIMAL_OPTIONS:
        raw = source.get(key)
        if raw in (None, ""):
            continue
        options[key] = str(parse_decimal(raw, field=key))
    for key in _TIMEOUT_OPTIONS:
        raw = source.get(key)
        if raw in (None, ""):
            continue
        parse_timeout(str(raw))
        options[key] = str(raw).strip()
    return options


@api_bp.post("/jobs")
def api_create_job() -> ResponseReturnValue:
    service = get_service()
    upload = request.files.get("file")
    if upload is not None and upload.filename:
        source: Mapping[str, Any] = request.form
        original_filename = secure_filename(upload.filename) or "document.txt"
        content = upload.read()
    else:
        payload = request.get_json(force=True, silent=True) or {}
        if not isinstance(payload, dict):
            return _error("Expected a JSON object")
        text = payload.get("text")
        if not isinstance(text, str):
            return _error("Provide a text file upload or a 'text' field")
        source = payload
        original_filename = secure_filename(str(payload.get("filename") or "")) or "document.txt"
        content = text.encode("utf-8")

    if not content.strip():
        return _error("The document is empty")

    try:
        options = _parse_options(source)
    except ValueError as exc:
        return _error(str(exc))

    stored_path = Path(service.uploads_root) / f"{uuid.uuid4().hex}_{original_filename}"
    stored_path.write_bytes(content)

    job = service.enqueue(original_filename=original_filename, stored_path=stored_path, options=options)
    return jsonify(job.as_dict()), 202


@api_bp.get("/jobs")
def api_list_jobs() -> ResponseReturnValue:
    return jsonify({"jobs": [job.as_dict() for job in get_service().list_jobs()]})


@api_bp.get("/jobs/<job_id>")
def api_get_job(job_id: str) -> ResponseReturnValue:
    job = get_service().get_job(job_id)
    if job is None:
        return _error("Job not found", 404)
    return jsonify(job.as_dict())


@api_bp.post("/jobs/<job_id>/cancel")
def api_cancel_job(job_id: str) -> ResponseReturnValue:
    service = get_service()
    job = service.get_job(job_id)
    if job is None:
        return _error("Job not found", 404)
    if not service.cancel(job_id):
        return _error(f"Job is already {job.status.value}", 409)
    return jsonify(job.as_dict())


@api_bp.get("/jobs/<job_id>/download")
def api_download(job_id: str) -> ResponseReturnValue:
    job = get_service().get_job(job_id)
    if job is None or job.status != ConversionStatus.COMPLETED:
        abort(404)
    path = job.output_path
    if not path.exists():
        abort(404)
    return send_file(
        path,
        as_attachment=True,
        download_name=path.name,
        mimetype="audio/wav",
    )


@api_bp.get("/jobs/<job_id>/logs/stream")
def api_stream_logs(job_id: str) -> ResponseReturnValue:
    job = get_service().get_job(job_id)
    if not job:
        abort(404)

    def generate():
        last_index = 0
        while True:
            finished = job.status in FINISHED_STATUSES
            current_logs = job.logs
            if len(current_logs) > last_index:
                for log in current_logs[last_index:]:
                    yield f"data: {json.dumps({'timestamp': log.timestamp, 'level': log.level, 'message': log.message})}\n\n"
                last_index = len(current_logs)
            if finished:
                yield f"event: end\ndata: {json.dumps({'status': job.status.value})}\n\n"
                break
            time.sleep(0.5)

    return Response(generate(), mimetype="text/event-stream")
