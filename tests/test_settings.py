from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest

from gflite import settings
from gflite.coordinator import DEFAULT_TRANSIENT_REASONS


def _write_config(settings_dir: Path, payload) -> None:
    settings_dir.mkdir(parents=True, exist_ok=True)
    (settings_dir / "config.json").write_text(json.dumps(payload), encoding="utf-8")


def test_defaults_without_config(isolated_settings):
    values = settings.get_runtime_settings()

    assert values["address"] == "127.0.0.1"
    assert values["port"] == 61000
    assert values["subtasks"] == 6
    assert values["task_timeout"] == "00:10:00"
    assert values["subtask_timeout"] == "00:01:00"
    assert values["max_retries"] == 2
    assert set(values["transient_reasons"]) == set(DEFAULT_TRANSIENT_REASONS)


def test_config_file_values_are_coerced(isolated_settings):
    _write_config(isolated_settings, {"gflite": {"subtasks": "3", "mainnet": "yes", "poll_interval": "0.5"}})

    values = settings.get_runtime_settings()

    assert values["subtasks"] == 3
    assert values["mainnet"] is True
    assert values["poll_interval"] == 0.5


def test_environment_overrides_config(isolated_settings, monkeypatch):
    _write_config(isolated_settings, {"subtasks": 3, "address": "10.0.0.2"})
    monkeypatch.setenv("GFLITE_SUBTASKS", "8")

    values = settings.get_runtime_settings()

    assert values["subtasks"] == 8
    assert values["address"] == "10.0.0.2"


def test_unreadable_config_falls_back_to_defaults(isolated_settings):
    isolated_settings.mkdir(parents=True, exist_ok=True)
    (isolated_settings / "config.json").write_text("{not json", encoding="utf-8")

    assert settings.get_runtime_settings()["port"] == 61000


def test_apply_overrides_skips_none_and_unknown_keys(isolated_settings):
    base = settings.get_runtime_settings()

    merged = settings.apply_overrides(base, {"subtasks": 4, "bid": None, "colour": "blue"})

    assert merged["subtasks"] == 4
    assert merged["bid"] == base["bid"]
    assert "colour" not in merged


def test_resolvers(isolated_settings):
    values = settings.apply_overrides(
        settings.get_runtime_settings(),
        {"bid": "2.5", "budget": "10", "task_timeout": "00:05:00"},
    )

    assert settings.resolve_bid(values) == Decimal("2.5")
    assert settings.resolve_budget(values) == Decimal("10")
    assert settings.resolve_timeouts(values) == (300.0, 60.0)


def test_empty_budget_means_unlimited(isolated_settings):
    assert settings.resolve_budget(settings.get_runtime_settings()) is None


def test_invalid_bid_is_rejected(isolated_settings):
    values = settings.apply_overrides(settings.get_runtime_settings(), {"bid": "free"})

    with pytest.raises(ValueError):
        settings.resolve_bid(values)


def test_build_golem_config(isolated_settings, tmp_path):
    values = settings.apply_overrides(
        settings.get_runtime_settings(),
        {"datadir": str(tmp_path / "golem"), "mainnet": True, "port": "62000"},
    )

    config = settings.build_golem_config(values)

    assert config.port == 62000
    assert config.secret_path() == tmp_path / "golem" / "mainnet" / "crossbar" / "secrets" / "golemcli.tck"
    assert config.budget is None


def test_build_retry_policy(isolated_settings):
    values = settings.apply_overrides(
        settings.get_runtime_settings(),
        {"max_retries": 5, "transient_reasons": "Disconnected, timeout"},
    )

    policy = settings.build_retry_policy(values)

    assert policy.max_retries == 5
    assert policy.transient_reasons == frozenset({"disconnected", "timeout"})


def test_negative_retry_budget_is_rejected(isolated_settings):
    values = settings.apply_overrides(settings.get_runtime_settings(), {"max_retries": -1})

    with pytest.raises(ValueError):
        settings.build_retry_policy(values)
