from __future__ import annotations

import atexit
import logging
import os
from pathlib import Path
from typing import Any, Optional

from flask import Flask

from gflite.utils import get_user_settings_dir

from .conversion_runner import run_conversion_job
from .service import build_service


class _SuppressSuccessfulAccessFilter(logging.Filter):
    """Filter out successful werkzeug access logs."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - small utility
        message = record.getMessage()
        return " 200 " not in message and " 202 " not in message and " 204 " not in message


_access_log_filter_attached = False


def _default_dirs() -> tuple[Path, Path]:
    uploads_override = os.environ.get("GFLITE_UPLOAD_ROOT")
    outputs_override = os.environ.get("GFLITE_OUTPUT_ROOT")
    base = Path(get_user_settings_dir()) / "web"

    uploads = Path(os.path.expanduser(uploads_override)).resolve() if uploads_override else base / "uploads"
    outputs = Path(os.path.expanduser(outputs_override)).resolve() if outputs_override else base / "outputs"

    uploads.mkdir(parents=True, exist_ok=True)
    outputs.mkdir(parents=True, exist_ok=True)
    return uploads, outputs


def create_app(config: Optional[dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    base_config: dict[str, Any] = {
        "MAX_CONTENT_LENGTH": 1024 * 1024 * 20,  # 20 MB documents
        "CONVERSION_RUNNER": run_conversion_job,
    }
    if config:
        base_config.update(config)
    if "UPLOAD_FOLDER" not in base_config or "OUTPUT_FOLDER" not in base_config:
        uploads_dir, outputs_dir = _default_dirs()
        base_config.setdefault("UPLOAD_FOLDER", str(uploads_dir))
        base_config.setdefault("OUTPUT_FOLDER", str(outputs_dir))
    app.config.update(base_config)

    service = build_service(
        runner=app.config["CONVERSION_RUNNER"],
        output_root=Path(app.config["OUTPUT_FOLDER"]),
        uploads_root=Path(app.config["UPLOAD_FOLDER"]),
    )
    app.extensions["conversion_service"] = service

    from gflite.webui.routes import api_bp

    app.register_blueprint(api_bp, url_prefix="/api")

    atexit.register(service.shutdown)

    global _access_log_filter_attached
    if not _access_log_filter_attached:
        logging.getLogger("werkzeug").addFilter(_SuppressSuccessfulAccessFilter())
        _access_log_filter_attached = True

    return app


def main() -> None:
    app = create_app()
    host = os.environ.get("GFLITE_HOST", "127.0.0.1")
    port = int(os.environ.get("GFLITE_PORT", "8818"))
    debug = os.environ.get("GFLITE_DEBUG", "false").lower() == "true"
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":  # pragma: no cover
    main()
