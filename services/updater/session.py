"""Update session controller.

Sequences one update attempt::

    IDLE -> WAITING_FOR_EXCLUSIVITY -> VALIDATING_PATHS -> PROBING_WRITABILITY
         -> [ESCALATING] -> MERGING_RESOURCES -> SYNCHRONIZING -> RELAUNCHING -> DONE

Every phase reports success or failure to the controller, which picks the next
transition.  The exclusivity token is released on every path into ``DONE``.
"""

from __future__ import annotations

import logging
import shutil
import sys
import time
from pathlib import Path
from typing import Callable, Sequence

from services.updater.elevation import Elevator, escalate_and_wait
from services.updater.exclusivity import ExclusivityGuard
from services.updater.launcher import HostLauncher
from services.updater.merge import merge_additive
from services.updater.models import (
    AlreadyRunningError,
    ElevationError,
    ExitCode,
    LaunchError,
    MergeError,
    SessionOutcome,
    SessionState,
    SyncError,
    UpdateSession,
)
from services.updater.recovery import clear_update_failure, record_update_failure
from services.updater.retry import RetryPolicy
from services.updater.synchronizer import (
    DEFAULT_RESOURCES_NAME,
    find_resources_directory,
    sync_destructive,
)
from services.updater.writability import DEFAULT_SENTINEL_NAME, can_write
from shared.logging_config import get_log_path

_LOGGER = logging.getLogger(__name__)


def _wait_for_acknowledgement() -> None:
    stdin = sys.stdin
    if stdin is None or not stdin.isatty():
        return
    try:
        input("Press Enter to exit...")
    except EOFError:
        return


class UpdateSessionController:
    """Drive an :class:`UpdateSession` through every phase of the update."""

    def __init__(
        self,
        guard: ExclusivityGuard,
        elevator: Elevator,
        launcher: HostLauncher,
        *,
        host_executable_name: str,
        policy: RetryPolicy | None = None,
        resources_name: str = DEFAULT_RESOURCES_NAME,
        sentinel_name: str = DEFAULT_SENTINEL_NAME,
        pause_on_failure: bool = False,
        acknowledge: Callable[[], None] = _wait_for_acknowledgement,
        self_command: Sequence[str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._guard = guard
        self._elevator = elevator
        self._launcher = launcher
        self._host_executable_name = host_executable_name
        self._policy = policy or RetryPolicy()
        self._resources_name = resources_name
        self._sentinel_name = sentinel_name
        self._pause_on_failure = pause_on_failure
        self._acknowledge = acknowledge
        self._self_command = self_command
        self._sleep = sleep

    def run(self, session: UpdateSession) -> SessionOutcome:
        """Run ``session`` to completion and return its outcome."""

        try:
            outcome = self._run_phases(session)
        finally:
            self._release_token(session)
            self._transition(session, SessionState.DONE)

        if outcome.success:
            _LOGGER.info("Update session finished successfully.")
        else:
            _LOGGER.error(
                "Update session failed (%s): %s", outcome.exit_code.name, outcome.reason
            )
        _LOGGER.info("Exiting.")
        return outcome

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _run_phases(self, session: UpdateSession) -> SessionOutcome:
        failure = self._wait_for_exclusivity(session)
        if failure is not None:
            return failure

        failure = self._validate_paths(session)
        if failure is not None:
            return failure

        self._transition(session, SessionState.PROBING_WRITABILITY)
        _LOGGER.info("Validating that target directory is writable...")
        writable = can_write(
            session.target_dir,
            self._policy,
            sentinel_name=self._sentinel_name,
            sleep=self._sleep,
        )
        if not writable:
            if session.elevated:
                reason = "Target directory is not writable even with elevated privileges."
                _LOGGER.error(reason)
                return SessionOutcome(ExitCode.PERMISSION_DENIED, reason)
            return self._escalate(session)

        failure = self._merge_resources(session)
        if failure is not None:
            return failure

        failure = self._synchronize(session)
        if failure is not None:
            return failure

        if session.elevated:
            _LOGGER.info("Leaving the host relaunch to the non-elevated updater.")
            return SessionOutcome(ExitCode.SUCCESS, files_updated=True)
        return self._relaunch_host(session)

    def _wait_for_exclusivity(self, session: UpdateSession) -> SessionOutcome | None:
        self._transition(session, SessionState.WAITING_FOR_EXCLUSIVITY)
        try:
            session.token = self._guard.acquire()
            if session.host_process_id is not None:
                _LOGGER.info("Waiting for the host application to close...")
                self._guard.wait_for_process_exit(session.host_process_id)
        except AlreadyRunningError as exc:
            _LOGGER.error("%s. Aborting.", exc)
            return SessionOutcome(ExitCode.ALREADY_RUNNING, str(exc))
        return None

    def _validate_paths(self, session: UpdateSession) -> SessionOutcome | None:
        self._transition(session, SessionState.VALIDATING_PATHS)

        _LOGGER.info("Checking source directory exists...")
        if not session.source_dir.is_dir():
            reason = "Source directory could not be found. Aborting."
            _LOGGER.error(reason)
            return SessionOutcome(ExitCode.SOURCE_MISSING, reason)

        _LOGGER.info("Checking target directory exists...")
        if not session.target_dir.is_dir():
            reason = "Target directory could not be found. Aborting."
            _LOGGER.error(reason)
            return SessionOutcome(ExitCode.TARGET_MISSING, reason)
        return None

    def _escalate(self, session: UpdateSession) -> SessionOutcome:
        self._transition(session, SessionState.ESCALATING)
        _LOGGER.info("Can't write to target directory. Attempting to relaunch as elevated user.")
        # The elevated child acquires the token itself.
        self._release_token(session)
        try:
            child_code = escalate_and_wait(
                session, self._elevator, self_command=self._self_command
            )
        except ElevationError as exc:
            _LOGGER.error("Failed to restart process as elevated user.")
            _LOGGER.error("%s", exc)
            return SessionOutcome(ExitCode.ESCALATION_FAILED, str(exc))

        if child_code is not ExitCode.SUCCESS:
            return SessionOutcome(child_code, f"Elevated updater failed with {child_code.name}")
        return self._relaunch_host(session)

    def _merge_resources(self, session: UpdateSession) -> SessionOutcome | None:
        self._transition(session, SessionState.MERGING_RESOURCES)
        _LOGGER.info("Merging resources into target directory...")
        try:
            source_resources = find_resources_directory(session.source_dir, self._resources_name)
            if source_resources is None:
                _LOGGER.info("No resources directory in the staged update. Skipping merge.")
                return None
            target_resources = find_resources_directory(
                session.target_dir, self._resources_name
            ) or (session.target_dir / source_resources.name)
            report = merge_additive(source_resources, target_resources)
        except (MergeError, OSError) as exc:
            reason = "Failed to copy resources directory from source directory to target directory."
            _LOGGER.error(reason)
            _LOGGER.error("%s", exc)
            return SessionOutcome(ExitCode.MERGE_FAILED, f"{reason} {exc}")

        _LOGGER.info(
            "Merged resources: %d moved, %d kept, %d directories created.",
            len(report.moved),
            len(report.skipped),
            len(report.created_directories),
        )
        return None

    def _synchronize(self, session: UpdateSession) -> SessionOutcome | None:
        self._transition(session, SessionState.SYNCHRONIZING)
        _LOGGER.info("Cleaning up target directory...")
        try:
            sync_destructive(
                session.source_dir,
                session.target_dir,
                self._policy,
                resources_name=self._resources_name,
                sleep=self._sleep,
            )
        except SyncError as exc:
            self._report_critical_failure(session, exc)
            return SessionOutcome(ExitCode.SYNC_FAILED, str(exc))

        _LOGGER.info("Successfully updated binaries and resources in target directory.")
        clear_update_failure(session.target_dir)
        self._remove_staging_residue(session.source_dir)
        return None

    def _relaunch_host(self, session: UpdateSession) -> SessionOutcome:
        self._transition(session, SessionState.RELAUNCHING)
        executable = session.target_dir / self._host_executable_name
        _LOGGER.info("Starting %s...", executable.name)
        try:
            self._launcher.launch(executable, session.target_dir)
        except LaunchError as exc:
            reason = f"Update was applied but the host application could not be started: {exc}"
            _LOGGER.error(reason)
            return SessionOutcome(ExitCode.RELAUNCH_FAILED, reason, files_updated=True)
        return SessionOutcome(ExitCode.SUCCESS, files_updated=True, host_launched=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _report_critical_failure(self, session: UpdateSession, error: SyncError) -> None:
        log_path = get_log_path() or Path.cwd() / "update.log"
        _LOGGER.critical("%s", error)
        _LOGGER.critical(
            "Failed to clean and copy source and target directories. "
            "Please keep the log file generated at %s and send it to the developer!",
            log_path,
        )
        _LOGGER.critical(
            "You may need to download and reinstall the application. This is a critical failure."
        )
        record_update_failure(session.target_dir, str(error), log_path)
        if self._pause_on_failure:
            self._acknowledge()

    def _remove_staging_residue(self, source_dir: Path) -> None:
        try:
            leftovers = list(source_dir.iterdir())
        except OSError as exc:
            _LOGGER.warning("Unable to inspect staging directory %s: %s", source_dir, exc)
            return
        for entry in leftovers:
            _LOGGER.debug("Removing staging residue %s", entry)
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as exc:
                _LOGGER.warning("Unable to remove staging residue %s: %s", entry, exc)

    def _release_token(self, session: UpdateSession) -> None:
        if session.token is not None:
            self._guard.release(session.token)
            session.token = None

    @staticmethod
    def _transition(session: UpdateSession, state: SessionState) -> None:
        session.state = state
        session.history.append(state)
        _LOGGER.debug("Session state -> %s", state.value)


__all__ = ["UpdateSessionController"]
