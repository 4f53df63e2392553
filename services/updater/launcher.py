"""Launch the host application once its files are in place."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Protocol

from services.updater.models import LaunchError

_LOGGER = logging.getLogger(__name__)


class HostLauncher(Protocol):
    """Protocol describing how the host executable is started."""

    def launch(self, executable: Path, working_directory: Path) -> None:
        """Start ``executable`` in ``working_directory`` without waiting for it."""


class SubprocessHostLauncher:
    """Spawn the host with :class:`subprocess.Popen` and detach from it."""

    def launch(self, executable: Path, working_directory: Path) -> None:
        _LOGGER.info("Starting host application %s", executable)
        popen_kwargs: dict[str, Any] = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
        }
        if os.name == "nt":  # pragma: no cover - exercised on Windows
            flags = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(
                subprocess, "CREATE_NEW_PROCESS_GROUP", 0
            )
            if flags:
                popen_kwargs["creationflags"] = flags
        else:
            popen_kwargs["start_new_session"] = True
        try:
            subprocess.Popen([str(executable)], cwd=str(working_directory), **popen_kwargs)
        except OSError as exc:
            raise LaunchError(f"Failed to launch host application: {exc}") from exc


__all__ = ["HostLauncher", "SubprocessHostLauncher"]
