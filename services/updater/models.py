"""Data models and errors used by the updater."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from services.updater.exclusivity import ExclusivityToken


class UpdaterError(RuntimeError):
    """Base class for failures raised by updater phases."""


class InvalidArgumentsError(UpdaterError):
    """Raised when the process entry arguments are missing or malformed."""


class AlreadyRunningError(UpdaterError):
    """Raised when exclusivity could not be obtained within the ceiling."""


class ElevationError(UpdaterError):
    """Raised when the elevated child could not be started."""


class MergeError(UpdaterError):
    """Raised when the additive resources merge fails."""


class SyncError(UpdaterError):
    """Raised when the destructive synchronization cannot complete."""


class LaunchError(UpdaterError):
    """Raised when the host executable could not be spawned."""


class ExitCode(IntEnum):
    """Process exit codes, also used to mirror an elevated child's outcome."""

    SUCCESS = 0
    INVALID_ARGUMENTS = 1
    ALREADY_RUNNING = 2
    SOURCE_MISSING = 3
    TARGET_MISSING = 4
    PERMISSION_DENIED = 5
    ESCALATION_FAILED = 6
    MERGE_FAILED = 7
    SYNC_FAILED = 8
    RELAUNCH_FAILED = 9
    UNEXPECTED_ERROR = 10

    @classmethod
    def from_child(cls, code: int) -> "ExitCode":
        try:
            return cls(code)
        except ValueError:
            return cls.UNEXPECTED_ERROR


class SessionState(str, Enum):
    IDLE = "idle"
    WAITING_FOR_EXCLUSIVITY = "waiting_for_exclusivity"
    VALIDATING_PATHS = "validating_paths"
    PROBING_WRITABILITY = "probing_writability"
    ESCALATING = "escalating"
    MERGING_RESOURCES = "merging_resources"
    SYNCHRONIZING = "synchronizing"
    RELAUNCHING = "relaunching"
    DONE = "done"


@dataclass(frozen=True)
class SessionArguments:
    """Positional arguments the updater process was started with."""

    source_dir: Path
    target_dir: Path
    host_process_id: int | None = None
    elevated: bool = False

    def to_argv(self, *, elevated: bool | None = None) -> list[str]:
        """Rebuild the positional argument vector, optionally overriding ``elevated``.

        Paths are made absolute: an elevation helper may start the child in
        another working directory.
        """

        flag = self.elevated if elevated is None else elevated
        return [
            str(self.source_dir.absolute()),
            str(self.target_dir.absolute()),
            str(self.host_process_id if self.host_process_id is not None else 0),
            "true" if flag else "false",
        ]


@dataclass
class UpdateSession:
    """State carried through every phase of one update attempt."""

    source_dir: Path
    target_dir: Path
    host_process_id: int | None = None
    elevated: bool = False
    token: ExclusivityToken | None = None
    state: SessionState = SessionState.IDLE
    escalation_attempted: bool = False
    history: list[SessionState] = field(default_factory=list)

    @classmethod
    def from_arguments(cls, arguments: SessionArguments) -> "UpdateSession":
        return cls(
            source_dir=arguments.source_dir,
            target_dir=arguments.target_dir,
            host_process_id=arguments.host_process_id,
            elevated=arguments.elevated,
        )

    def to_arguments(self) -> SessionArguments:
        return SessionArguments(
            source_dir=self.source_dir,
            target_dir=self.target_dir,
            host_process_id=self.host_process_id,
            elevated=self.elevated,
        )


@dataclass(frozen=True)
class SessionOutcome:
    """Terminal result of an update session."""

    exit_code: ExitCode
    reason: str = ""
    files_updated: bool = False
    host_launched: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code is ExitCode.SUCCESS


__all__ = [
    "AlreadyRunningError",
    "ElevationError",
    "ExitCode",
    "InvalidArgumentsError",
    "LaunchError",
    "MergeError",
    "SessionArguments",
    "SessionOutcome",
    "SessionState",
    "SyncError",
    "UpdateSession",
    "UpdaterError",
]
