"""Central logging configuration for the updater process.

The updater writes one line per event to an append-only log file and mirrors
every line to standard output so an operator watching the console sees the
same stream.  Lines look like::

    [2024/01/02 03:04:05] Waiting for the host process to exit...
    [2024/01/02 03:04:06] (Elevated) Attempting to remove target file: ...

Two environment variables allow customising where the log file is written:

``UPDATER_LOG_FILE``
    Absolute path to the log file that should be created.

``UPDATER_LOG_DIR``
    Directory where the default log file name will be created.  Ignored when
    ``UPDATER_LOG_FILE`` is present.

Without either, ``update.log`` is created in the current working directory.
"""

from __future__ import annotations

import logging
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Iterable

LOG_FILE_ENV = "UPDATER_LOG_FILE"
_LOG_DIR_ENV = "UPDATER_LOG_DIR"
_DEFAULT_LOGNAME = "update.log"
_CONFIGURED = False
_LOG_PATH: Path | None = None
_HANDLER_TAG = "_updater_logging_handler"
_FILE_HANDLER: logging.FileHandler | None = None

ELEVATED_MARKER = " (Elevated)"
DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


class LogVerbosity(str, Enum):
    """Verbosity levels supported by the updater log file."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    VERBOSE = "verbose"


_VERBOSITY_LEVELS: dict[LogVerbosity, int] = {
    LogVerbosity.ERROR: logging.ERROR,
    LogVerbosity.WARNING: logging.WARNING,
    LogVerbosity.INFO: logging.INFO,
    LogVerbosity.VERBOSE: logging.DEBUG,
}

_DEFAULT_VERBOSITY = LogVerbosity.INFO
_CURRENT_VERBOSITY = _DEFAULT_VERBOSITY


class UpdaterFormatter(logging.Formatter):
    """Render ``[YYYY/MM/DD hh:mm:ss]{ (Elevated)} message`` lines."""

    def __init__(self, *, elevated: bool = False) -> None:
        super().__init__("[%(asctime)s]%(elevation)s %(message)s", datefmt=DATE_FORMAT)
        self.elevated = elevated

    def format(self, record: logging.LogRecord) -> str:
        record.elevation = ELEVATED_MARKER if self.elevated else ""
        return super().format(record)


def ensure_updater_logging(*, elevated: bool = False) -> Path:
    """Configure the root logger for the updater process.

    The first invocation installs a file handler and a stdout handler that
    share one :class:`UpdaterFormatter`.  Subsequent calls only refresh the
    elevation marker and return the already configured log file path.

    Returns
    -------
    Path
        Location of the log file that records the update session.
    """

    global _CONFIGURED, _LOG_PATH, _FILE_HANDLER

    if _CONFIGURED and _LOG_PATH is not None:
        set_elevated_marker(elevated)
        return _LOG_PATH

    log_path = _resolve_log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    formatter = UpdaterFormatter(elevated=elevated)

    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(_VERBOSITY_LEVELS[_CURRENT_VERBOSITY])
    file_handler.setFormatter(formatter)
    setattr(file_handler, _HANDLER_TAG, True)
    root.addHandler(file_handler)
    _FILE_HANDLER = file_handler

    if _should_log_to_stdout(root.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(logging.INFO)
        stream_handler.setFormatter(formatter)
        setattr(stream_handler, _HANDLER_TAG, True)
        root.addHandler(stream_handler)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the configured log file path, if logging has been set up."""

    return _LOG_PATH


def set_elevated_marker(elevated: bool) -> None:
    """Toggle the ``(Elevated)`` marker on every managed handler."""

    for handler in _managed_handlers():
        formatter = handler.formatter
        if isinstance(formatter, UpdaterFormatter):
            formatter.elevated = elevated


def set_file_log_verbosity(verbosity: LogVerbosity | str) -> None:
    """Adjust the minimum severity recorded in the updater log file."""

    global _CURRENT_VERBOSITY

    if isinstance(verbosity, str):
        try:
            verbosity = LogVerbosity(verbosity.lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported log verbosity: {verbosity}") from exc

    _CURRENT_VERBOSITY = verbosity
    if _FILE_HANDLER is not None:
        _FILE_HANDLER.setLevel(_VERBOSITY_LEVELS[verbosity])


def get_file_log_verbosity() -> LogVerbosity:
    """Return the current verbosity level for the updater log file."""

    return _CURRENT_VERBOSITY


def _resolve_log_path() -> Path:
    env_file = os.environ.get(LOG_FILE_ENV)
    if env_file:
        return Path(env_file).expanduser()

    env_dir = os.environ.get(_LOG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser() / _DEFAULT_LOGNAME

    return Path.cwd() / _DEFAULT_LOGNAME


def _should_log_to_stdout(handlers: Iterable[logging.Handler]) -> bool:
    stdout = getattr(sys, "stdout", None)
    if stdout is None:
        return False
    for handler in handlers:
        if isinstance(handler, logging.StreamHandler) and handler.stream is stdout:
            return False
    return True


def _managed_handlers() -> list[logging.Handler]:
    return [
        handler
        for handler in logging.getLogger().handlers
        if getattr(handler, _HANDLER_TAG, False)
    ]


def _reset_for_tests() -> None:
    """Remove handlers installed by :func:`ensure_updater_logging`."""

    global _CONFIGURED, _LOG_PATH, _FILE_HANDLER, _CURRENT_VERBOSITY

    root = logging.getLogger()
    for handler in _managed_handlers():
        root.removeHandler(handler)
        try:
            handler.close()
        except Exception:  # pragma: no cover - close should rarely fail
            pass

    _CONFIGURED = False
    _LOG_PATH = None
    _FILE_HANDLER = None
    _CURRENT_VERBOSITY = _DEFAULT_VERBOSITY


__all__ = [
    "DATE_FORMAT",
    "ELEVATED_MARKER",
    "LOG_FILE_ENV",
    "LogVerbosity",
    "UpdaterFormatter",
    "ensure_updater_logging",
    "get_file_log_verbosity",
    "get_log_path",
    "set_elevated_marker",
    "set_file_log_verbosity",
]
