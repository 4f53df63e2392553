from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_project_root_on_path() -> None:
    """Guarantee the repository root is discoverable for absolute imports."""

    root = Path(__file__).resolve().parent.parent
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


_ensure_project_root_on_path()

from app.config import reset_updater_config_cache  # noqa: E402
from shared import logging_config  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_updater_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
):
    """Keep lock files and log output of every test in temporary directories."""

    lock_dir = tmp_path_factory.mktemp("locks")
    log_dir = tmp_path_factory.mktemp("logs")
    monkeypatch.setenv("UPDATER_LOCK_DIR", str(lock_dir))
    monkeypatch.setenv("UPDATER_LOG_DIR", str(log_dir))
    monkeypatch.delenv("UPDATER_LOG_FILE", raising=False)
    logging_config._reset_for_tests()
    reset_updater_config_cache()

    yield

    logging_config._reset_for_tests()
    reset_updater_config_cache()
