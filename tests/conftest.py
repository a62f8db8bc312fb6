from __future__ import annotations

import os

import pytest

from gflite import settings, utils


@pytest.fixture
def isolated_settings(tmp_path, monkeypatch):
    """Point the settings layer at an empty directory with no GFLITE_* env."""

    settings_dir = tmp_path / "settings"
    for key in list(os.environ):
        if key.startswith("GFLITE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GFLITE_SETTINGS_DIR", str(settings_dir))
    utils.get_user_settings_dir.cache_clear()
    settings.clear_cached_settings()
    yield settings_dir
    utils.get_user_settings_dir.cache_clear()
    settings.clear_cached_settings()
