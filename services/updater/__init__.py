"""Public API for the updater package."""

from __future__ import annotations

from services.updater.builder import build_session_controller
from services.updater.constants import LOCK_DIR_ENV, UPDATE_FAILURE_MARKER_SUFFIX
from services.updater.elevation import Elevator, PosixElevator, WindowsElevator, escalate_and_wait
from services.updater.exclusivity import ExclusivityGuard, ExclusivityToken
from services.updater.launcher import HostLauncher, SubprocessHostLauncher
from services.updater.merge import MergeReport, merge_additive
from services.updater.models import (
    AlreadyRunningError,
    ElevationError,
    ExitCode,
    InvalidArgumentsError,
    LaunchError,
    MergeError,
    SessionArguments,
    SessionOutcome,
    SessionState,
    SyncError,
    UpdateSession,
    UpdaterError,
)
from services.updater.processes import process_exists
from services.updater.recovery import consume_update_failure_notice
from services.updater.retry import RetryExhaustedError, RetryPolicy, run_with_retry
from services.updater.session import UpdateSessionController
from services.updater.synchronizer import EntryKind, SyncReport, classify_entry, sync_destructive
from services.updater.writability import can_write

__all__ = [
    "LOCK_DIR_ENV",
    "UPDATE_FAILURE_MARKER_SUFFIX",
    "AlreadyRunningError",
    "ElevationError",
    "Elevator",
    "EntryKind",
    "ExclusivityGuard",
    "ExclusivityToken",
    "ExitCode",
    "HostLauncher",
    "InvalidArgumentsError",
    "LaunchError",
    "MergeError",
    "MergeReport",
    "PosixElevator",
    "RetryExhaustedError",
    "RetryPolicy",
    "SessionArguments",
    "SessionOutcome",
    "SessionState",
    "SubprocessHostLauncher",
    "SyncError",
    "SyncReport",
    "UpdateSession",
    "UpdateSessionController",
    "UpdaterError",
    "WindowsElevator",
    "build_session_controller",
    "can_write",
    "classify_entry",
    "consume_update_failure_notice",
    "escalate_and_wait",
    "merge_additive",
    "process_exists",
    "run_with_retry",
    "sync_destructive",
]
