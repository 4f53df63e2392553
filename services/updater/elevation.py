"""Relaunch the updater with elevated privileges and wait for it."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, Mapping, Protocol, Sequence

from services.updater.constants import LOCK_DIR_ENV, UPDATER_MODULE
from services.updater.exclusivity import get_lock_directory
from services.updater.models import ElevationError, ExitCode, UpdateSession
from shared.logging_config import LOG_FILE_ENV, get_log_path

_LOGGER = logging.getLogger(__name__)

_SEE_MASK_NOCLOSEPROCESS = 0x00000040
_SW_SHOWNORMAL = 1
_INFINITE = 0xFFFFFFFF
_ERROR_CANCELLED = 1223

# pkexec: 126 when the authentication dialog is dismissed, 127 when not authorised.
_PKEXEC_REFUSED = {126, 127}
# sudo: 1 when authentication fails or is cancelled. The child is never
# started with arguments it could reject, so 1 cannot come from the updater.
_SUDO_REFUSED = {1}


class Elevator(Protocol):
    """Protocol describing the platform-specific elevated relaunch."""

    def run_elevated(self, command: Sequence[str], working_directory: Path) -> int:
        """Run ``command`` elevated, wait for it and return its exit code."""


class WindowsElevator:
    """Use ``ShellExecuteExW`` with the ``runas`` verb to trigger a UAC prompt."""

    def run_elevated(
        self, command: Sequence[str], working_directory: Path
    ) -> int:  # pragma: no cover - requires Windows
        import ctypes
        from ctypes import wintypes

        class SHELLEXECUTEINFOW(ctypes.Structure):
            _fields_ = [
                ("cbSize", wintypes.DWORD),
                ("fMask", ctypes.c_ulong),
                ("hwnd", wintypes.HWND),
                ("lpVerb", wintypes.LPCWSTR),
                ("lpFile", wintypes.LPCWSTR),
                ("lpParameters", wintypes.LPCWSTR),
                ("lpDirectory", wintypes.LPCWSTR),
                ("nShow", ctypes.c_int),
                ("hInstApp", wintypes.HINSTANCE),
                ("lpIDList", ctypes.c_void_p),
                ("lpClass", wintypes.LPCWSTR),
                ("hkeyClass", wintypes.HKEY),
                ("dwHotKey", wintypes.DWORD),
                ("hIconOrMonitor", wintypes.HANDLE),
                ("hProcess", wintypes.HANDLE),
            ]

        shell32 = ctypes.WinDLL("shell32", use_last_error=True)
        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)

        info = SHELLEXECUTEINFOW()
        info.cbSize = ctypes.sizeof(info)
        info.fMask = _SEE_MASK_NOCLOSEPROCESS
        info.lpVerb = "runas"
        info.lpFile = command[0]
        info.lpParameters = subprocess.list2cmdline(list(command[1:]))
        info.lpDirectory = str(working_directory)
        info.nShow = _SW_SHOWNORMAL

        if not shell32.ShellExecuteExW(ctypes.byref(info)):
            error = ctypes.get_last_error()
            if error == _ERROR_CANCELLED:
                raise ElevationError("The elevation prompt was declined")
            raise ElevationError(f"ShellExecuteExW failed with error {error}")
        if not info.hProcess:
            raise ElevationError("Elevated process handle was not returned")

        try:
            kernel32.WaitForSingleObject(info.hProcess, _INFINITE)
            exit_code = wintypes.DWORD()
            if not kernel32.GetExitCodeProcess(info.hProcess, ctypes.byref(exit_code)):
                raise ElevationError(
                    f"GetExitCodeProcess failed with error {ctypes.get_last_error()}"
                )
            return int(exit_code.value)
        finally:
            kernel32.CloseHandle(info.hProcess)


class PosixElevator:
    """Run the command through ``pkexec`` (or ``sudo``) and wait for it.

    Both helpers reset the environment and ``pkexec`` also changes the
    working directory, so the variables from :func:`forwarded_environment`
    are passed explicitly through ``env``.
    """

    def __init__(
        self,
        helpers: Sequence[str] = ("pkexec", "sudo"),
        *,
        environment: Callable[[], Mapping[str, str]] | None = None,
    ) -> None:
        self._helpers = tuple(helpers)
        self._environment = environment or forwarded_environment

    def run_elevated(self, command: Sequence[str], working_directory: Path) -> int:
        helper = self._find_helper()
        variables = [f"{name}={value}" for name, value in self._environment().items()]
        argv = [helper]
        if variables:
            argv.extend([shutil.which("env") or "/usr/bin/env", *variables])
        argv.extend(command)
        try:
            completed = subprocess.run(
                argv,
                cwd=str(working_directory),
                check=False,
            )
        except OSError as exc:
            raise ElevationError(f"Failed to start elevated process: {exc}") from exc
        if completed.returncode in self._refusal_codes(helper):
            raise ElevationError(
                f"The elevation request was declined ({Path(helper).name} exited with "
                f"{completed.returncode})"
            )
        return completed.returncode

    def _find_helper(self) -> str:
        for name in self._helpers:
            path = shutil.which(name)
            if path:
                return path
        raise ElevationError(
            f"No privilege elevation helper found (tried {', '.join(self._helpers)})"
        )

    @staticmethod
    def _refusal_codes(helper: str) -> set[int]:
        name = Path(helper).name
        if name == "pkexec":
            return _PKEXEC_REFUSED
        if name == "sudo":
            return _SUDO_REFUSED
        return set()


def forwarded_environment() -> dict[str, str]:
    """Return the variables the elevated child needs to share this session's files."""

    variables: dict[str, str] = {}
    log_path = get_log_path()
    if log_path is not None:
        variables[LOG_FILE_ENV] = str(log_path.absolute())
    variables[LOCK_DIR_ENV] = str(get_lock_directory().absolute())
    if not getattr(sys, "frozen", False):
        project_root = str(Path(__file__).resolve().parents[2])
        existing = os.environ.get("PYTHONPATH")
        variables["PYTHONPATH"] = (
            os.pathsep.join([project_root, existing]) if existing else project_root
        )
    return variables


def build_self_command() -> list[str]:
    """Return the command that starts this updater again."""

    if getattr(sys, "frozen", False):
        return [sys.executable]
    return [sys.executable, "-m", UPDATER_MODULE]


def escalate_and_wait(
    session: UpdateSession,
    elevator: Elevator,
    *,
    self_command: Sequence[str] | None = None,
    working_directory: Path | None = None,
) -> ExitCode:
    """Relaunch the updater elevated with the session's arguments and wait.

    Raises
    ------
    ElevationError
        If the session is already elevated or the child cannot be started.
    """

    if session.elevated:
        raise ElevationError("Session is already elevated; refusing to escalate again")
    if session.escalation_attempted:
        raise ElevationError("Escalation was already attempted for this session")
    session.escalation_attempted = True

    command = [*(self_command or build_self_command())]
    command.extend(session.to_arguments().to_argv(elevated=True))
    cwd = working_directory or Path.cwd()
    _LOGGER.debug("Elevated command: %s (cwd=%s)", command, cwd)

    child_code = elevator.run_elevated(command, cwd)
    outcome = ExitCode.from_child(child_code)
    _LOGGER.info("Elevated process exited with code %d (%s).", child_code, outcome.name)
    return outcome


def default_elevator() -> Elevator:
    if os.name == "nt":  # pragma: no cover - exercised on Windows
        return WindowsElevator()
    return PosixElevator()


__all__ = [
    "Elevator",
    "PosixElevator",
    "WindowsElevator",
    "build_self_command",
    "default_elevator",
    "escalate_and_wait",
    "forwarded_environment",
]
