import json
import logging
import os
import sys
from functools import lru_cache
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from platformdirs import user_config_dir, user_data_dir

from gflite.errors import DocumentError

logger = logging.getLogger(__name__)


def _load_environment() -> None:
    explicit_path = os.environ.get("GFLITE_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("GFLITE_SETTINGS_DIR")
    if override:
        return ensure_directory(override)
    config_dir = user_config_dir("gflite", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


def get_user_config_path():
    return os.path.join(get_user_settings_dir(), "config.json")


def load_config():
    path = get_user_config_path()
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if not isinstance(payload, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return payload


def default_golem_datadir() -> Path:
    """Return the Golem agent's default data directory for this platform."""
    return Path(user_data_dir("golem", "golem")) / "default"


def read_document(path) -> str:
    """Read a whole input text file as UTF-8."""
    source = Path(path)
    if not source.is_file():
        raise DocumentError(f"Input file '{source}' doesn't exist. Did you make a typo anywhere?")
    try:
        return source.read_bytes().decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DocumentError(f"converting '{source}' to text: {exc}") from exc
    except OSError as exc:
        raise DocumentError(f"reading from '{source}': {exc}") from exc


def configure_logging(verbose=False):
    root = logging.getLogger()
    job_logger = logging.getLogger("gflite.jobs")
    if not verbose:
        root.setLevel(logging.WARNING)
        job_logger.setLevel(logging.WARNING)
        return
    level_name = os.environ.get("GFLITE_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%Y-%m-%d %H:%M:%S"))
    root.handlers[:] = [handler]
    root.setLevel(level)
    job_logger.setLevel(level)
