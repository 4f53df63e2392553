"""Command line entry point for the updater process.

Usage::

    python -m services.updater SOURCE TARGET [HOST_PID] [ELEVATED]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import NoReturn, Sequence

from app.config import get_updater_config
from app.version import get_app_version
from services.updater.builder import build_session_controller
from services.updater.constants import (
    ELEVATED_FALSE_VALUES,
    ELEVATED_TRUE_VALUES,
    NO_HOST_PROCESS_IDS,
)
from services.updater.models import (
    ExitCode,
    InvalidArgumentsError,
    SessionArguments,
    UpdateSession,
)
from services.updater.session import UpdateSessionController
from shared.logging_config import ensure_updater_logging, set_file_log_verbosity

_LOGGER = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        raise InvalidArgumentsError(message)


def _configure_logging(*, elevated: bool = False) -> None:
    ensure_updater_logging(elevated=elevated)
    set_file_log_verbosity(get_updater_config().logging.verbosity)


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="portable-updater",
        description="Replace a host installation with a staged update and relaunch it.",
        add_help=False,
    )
    parser.add_argument("source", help="Staging directory holding the new files")
    parser.add_argument("target", help="Installation directory to update in place")
    parser.add_argument("host_pid", nargs="?", default=None, help="Process ID to wait for")
    parser.add_argument("elevated", nargs="?", default=None, help="'true' when already elevated")
    return parser


def _parse_host_pid(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        pid = int(raw.strip())
    except ValueError as exc:
        raise InvalidArgumentsError(f"Host process ID is not a number: {raw!r}") from exc
    if pid in NO_HOST_PROCESS_IDS:
        return None
    if pid < 0:
        raise InvalidArgumentsError(f"Host process ID must not be negative: {pid}")
    return pid


def _parse_elevated(raw: str | None) -> bool:
    if raw is None:
        return False
    lowered = raw.strip().lower()
    if lowered in ELEVATED_TRUE_VALUES:
        return True
    if lowered in ELEVATED_FALSE_VALUES:
        return False
    raise InvalidArgumentsError(f"Elevated flag must be true or false: {raw!r}")


def parse_arguments(argv: Sequence[str]) -> SessionArguments:
    """Parse the positional entry arguments.

    Raises
    ------
    InvalidArgumentsError
        When arguments are missing, surplus or malformed.
    """

    namespace = _build_parser().parse_args(list(argv))
    if not namespace.source.strip() or not namespace.target.strip():
        raise InvalidArgumentsError("Source and target directories must not be empty")
    return SessionArguments(
        source_dir=Path(namespace.source).absolute(),
        target_dir=Path(namespace.target).absolute(),
        host_process_id=_parse_host_pid(namespace.host_pid),
        elevated=_parse_elevated(namespace.elevated),
    )


def main(
    argv: Sequence[str] | None = None,
    *,
    controller: UpdateSessionController | None = None,
) -> int:
    """Run one update session and return the process exit code."""

    raw_args = list(sys.argv[1:] if argv is None else argv)
    try:
        arguments = parse_arguments(raw_args)
    except InvalidArgumentsError as exc:
        _configure_logging()
        _LOGGER.error("Invalid arguments: %s", exc)
        _LOGGER.error("Usage: portable-updater SOURCE TARGET [HOST_PID] [ELEVATED]")
        return int(ExitCode.INVALID_ARGUMENTS)

    _configure_logging(elevated=arguments.elevated)
    _LOGGER.info("Updater %s initialized with arguments:", get_app_version())
    for value in raw_args:
        _LOGGER.info("Argument: %s", value)

    session = UpdateSession.from_arguments(arguments)
    try:
        controller = controller or build_session_controller()
        outcome = controller.run(session)
    except Exception:
        _LOGGER.exception("Unexpected error while running the update session")
        return int(ExitCode.UNEXPECTED_ERROR)
    return int(outcome.exit_code)


__all__ = ["main", "parse_arguments"]
