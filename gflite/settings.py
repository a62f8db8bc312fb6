from __future__ import annotations

import os
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from gflite.coordinator import DEFAULT_TRANSIENT_REASONS, RetryPolicy
from gflite.integrations.golem import GolemConfig
from gflite.timeouts import parse_timeout
from gflite.utils import default_golem_datadir, load_config

_SETTINGS_DEFAULTS: Dict[str, Any] = {
    "address": "127.0.0.1",
    "port": 61000,
    "datadir": "",
    "mainnet": False,
    "auth_id": "golemcli",
    "verify_ssl": False,
    "rpc_timeout": 30.0,
    "subtasks": 6,
    "bid": "1.0",
    "budget": "",
    "task_timeout": "00:10:00",
    "subtask_timeout": "00:01:00",
    "max_retries": 2,
    "transient_reasons": sorted(DEFAULT_TRANSIENT_REASONS),
    "poll_interval": 1.0,
    "fetch_workers": 4,
    "kernel_js": "",
    "kernel_wasm": "",
}


def _environment_key(key: str) -> str:
    return f"GFLITE_{key.upper()}"


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_list(value: Any, default: List[str]) -> List[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        items = [token.strip() for token in value.split(",")]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(token).strip() for token in value]
    else:
        return list(default)
    return [item.lower() for item in items if item]


def _coerce(key: str, raw_value: Any) -> Any:
    default = _SETTINGS_DEFAULTS[key]
    if isinstance(default, bool):
        return _coerce_bool(raw_value, default)
    if isinstance(default, int):
        return _coerce_int(raw_value, default)
    if isinstance(default, float):
        return _coerce_float(raw_value, default)
    if isinstance(default, list):
        return _coerce_list(raw_value, default)
    return "" if raw_value is None else str(raw_value).strip()


def _environment_defaults() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for key in _SETTINGS_DEFAULTS:
        value = os.environ.get(_environment_key(key))
        if value is None or value == "":
            continue
        overrides[key] = value
    return overrides


def _extract_settings(source: Mapping[str, Any]) -> Dict[str, Any]:
    env_defaults = _environment_defaults()
    extracted: Dict[str, Any] = {}
    for key, default in _SETTINGS_DEFAULTS.items():
        if key in env_defaults:
            raw_value = env_defaults[key]
        elif key in source:
            raw_value = source.get(key)
        else:
            raw_value = default
        extracted[key] = _coerce(key, raw_value)
    return extracted


@lru_cache(maxsize=1)
def _cached_settings() -> Dict[str, Any]:
    config = load_config() or {}
    section = config.get("gflite", config)
    if not isinstance(section, Mapping):
        section = {}
    return _extract_settings(section)


def get_runtime_settings() -> Dict[str, Any]:
    return dict(_cached_settings())


def clear_cached_settings() -> None:
    _cached_settings.cache_clear()


def apply_overrides(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Layer explicit overrides (CLI flags, API parameters) over settings.

    Unknown keys and ``None`` values are ignored so callers can pass through
    every optional argument unchanged.
    """

    merged: Dict[str, Any] = dict(base)
    for key, value in overrides.items():
        if key not in _SETTINGS_DEFAULTS or value is None:
            continue
        merged[key] = _coerce(key, value)
    return merged


def parse_decimal(value: Any, *, field: str) -> Decimal:
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{field} must be a decimal number, got '{value}'") from exc
    if not parsed.is_finite() or parsed <= 0:
        raise ValueError(f"{field} must be positive, got '{value}'")
    return parsed


def resolve_bid(settings: Mapping[str, Any]) -> Decimal:
    return parse_decimal(settings.get("bid"), field="bid")


def resolve_budget(settings: Mapping[str, Any]) -> Optional[Decimal]:
    raw = settings.get("budget")
    if raw is None or str(raw).strip() == "":
        return None
    return parse_decimal(raw, field="budget")


def resolve_timeouts(settings: Mapping[str, Any]) -> tuple[float, float]:
    """Return ``(task_timeout, subtask_timeout)`` in seconds."""
    return parse_timeout(settings["task_timeout"]), parse_timeout(settings["subtask_timeout"])


def _optional_path(value: Any) -> Optional[Path]:
    text = str(value or "").strip()
    return Path(text).expanduser() if text else None


def build_golem_config(settings: Mapping[str, Any]) -> GolemConfig:
    datadir = _optional_path(settings.get("datadir")) or default_golem_datadir()
    return GolemConfig(
        address=str(settings.get("address") or _SETTINGS_DEFAULTS["address"]),
        port=_coerce_int(settings.get("port"), _SETTINGS_DEFAULTS["port"]),
        datadir=datadir,
        mainnet=_coerce_bool(settings.get("mainnet"), False),
        auth_id=str(settings.get("auth_id") or _SETTINGS_DEFAULTS["auth_id"]),
        verify_ssl=_coerce_bool(settings.get("verify_ssl"), False),
        timeout=_coerce_float(settings.get("rpc_timeout"), _SETTINGS_DEFAULTS["rpc_timeout"]),
        budget=resolve_budget(settings),
        kernel_js=_optional_path(settings.get("kernel_js")),
        kernel_wasm=_optional_path(settings.get("kernel_wasm")),
    )


def build_retry_policy(settings: Mapping[str, Any]) -> RetryPolicy:
    max_retries = _coerce_int(settings.get("max_retries"), _SETTINGS_DEFAULTS["max_retries"])
    if max_retries < 0:
        raise ValueError(f"max_retries must not be negative, got {max_retries}")
    reasons = _coerce_list(settings.get("transient_reasons"), _SETTINGS_DEFAULTS["transient_reasons"])
    return RetryPolicy(max_retries=max_retries, transient_reasons=frozenset(reasons))
