"""System-wide exclusivity for updater sessions.

Two mechanisms are combined by the session controller:

* a named lock keyed by a fixed application identifier, so at most one
  updater runs at a time, and
* PID polling, so the updater waits until the host it replaces has exited.

The named lock is an advisory OS lock on a file in the temp directory
(``fcntl.flock`` on POSIX, ``msvcrt.locking`` on Windows).  The lock is owned
by the open file handle, so a crashed updater never leaves a stale lock
behind.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import IO, Callable

from app.config import ExclusivityConfig
from services.updater.constants import LOCK_DIR_ENV, LOCK_FILE_PREFIX
from services.updater.models import AlreadyRunningError
from services.updater.processes import process_exists

_LOGGER = logging.getLogger(__name__)


def get_lock_directory() -> Path:
    """Return the directory holding updater lock files."""

    override = os.environ.get(LOCK_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path(tempfile.gettempdir())


def get_lock_file_path(identifier: str, lock_dir: Path | None = None) -> Path:
    """Return the lock file used for ``identifier``."""

    digest = hashlib.sha1(identifier.encode("utf-8")).hexdigest()[:16]
    directory = lock_dir if lock_dir is not None else get_lock_directory()
    return directory / f"{LOCK_FILE_PREFIX}.{digest}.lock"


def _open_lock_file(lock_path: Path) -> IO[str]:
    # Open an existing file without O_CREAT: a sticky temp dir with
    # protected_regular refuses O_CREAT on a file owned by another user.
    try:
        fd = os.open(lock_path, os.O_RDWR)
    except FileNotFoundError:
        try:
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o666)
        except FileExistsError:
            fd = os.open(lock_path, os.O_RDWR)
        else:
            try:
                os.chmod(lock_path, 0o666)
            except OSError as exc:
                _LOGGER.debug("Unable to widen permissions on %s: %s", lock_path, exc)
    return os.fdopen(fd, "r+", encoding="utf-8")


def _lock_handle(handle: IO[str]) -> bool:
    handle.seek(0)
    if os.name == "nt":  # pragma: no cover - exercised on Windows
        import msvcrt

        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock_handle(handle: IO[str]) -> None:
    handle.seek(0)
    if os.name == "nt":  # pragma: no cover - exercised on Windows
        import msvcrt

        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return

    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class ExclusivityToken:
    """A held updater lock.  Release it exactly once."""

    def __init__(self, identifier: str, lock_path: Path, handle: IO[str]) -> None:
        self.identifier = identifier
        self.lock_path = lock_path
        self._handle: IO[str] | None = handle

    @property
    def released(self) -> bool:
        return self._handle is None

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        # The lock file stays on disk: unlinking it would let a waiter that
        # already opened it lock an orphaned inode.
        try:
            _unlock_handle(handle)
        except OSError as exc:
            _LOGGER.debug("Unlocking %s failed: %s", self.lock_path, exc)
        finally:
            handle.close()
        _LOGGER.debug("Released exclusivity token %s", self.identifier)

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"ExclusivityToken({self.identifier!r}, {state})"


class ExclusivityGuard:
    """Acquire and release the updater's named lock."""

    def __init__(
        self,
        config: ExclusivityConfig,
        *,
        lock_dir: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._lock_dir = lock_dir
        self._clock = clock
        self._sleep = sleep

    @property
    def identifier(self) -> str:
        return self._config.identifier

    def try_acquire(self, identifier: str | None = None) -> ExclusivityToken | None:
        """Return a token if the lock is free right now, otherwise ``None``.

        Raises
        ------
        AlreadyRunningError
            If the lock file cannot be opened at all.
        """

        name = identifier or self._config.identifier
        lock_path = get_lock_file_path(name, self._lock_dir)
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = _open_lock_file(lock_path)
        except OSError as exc:
            _LOGGER.error("Unable to open updater lock file %s: %s", lock_path, exc)
            raise AlreadyRunningError(
                f"Unable to open updater lock file {lock_path}: {exc}"
            ) from exc
        if not _lock_handle(handle):
            handle.close()
            return None
        return ExclusivityToken(name, lock_path, handle)

    def acquire(self, identifier: str | None = None) -> ExclusivityToken:
        """Block until the lock is acquired or the ceiling elapses.

        Raises
        ------
        AlreadyRunningError
            If another instance still holds the lock after
            ``ceiling_seconds``.
        """

        name = identifier or self._config.identifier
        deadline = self._clock() + self._config.ceiling_seconds
        while True:
            token = self.try_acquire(name)
            if token is not None:
                _LOGGER.debug("Acquired exclusivity token %s", name)
                return token
            if self._clock() >= deadline:
                raise AlreadyRunningError(
                    f"Another updater instance still holds '{name}' after "
                    f"{self._config.ceiling_seconds} seconds"
                )
            _LOGGER.info("Another updater instance is running. Waiting for it to finish...")
            self._sleep(self._config.poll_interval_seconds)

    def release(self, token: ExclusivityToken | None) -> None:
        if token is not None:
            token.release()

    def wait_for_process_exit(
        self,
        pid: int,
        *,
        exists: Callable[[int], bool] | None = None,
    ) -> None:
        """Poll ``pid`` until it is no longer running.

        Raises
        ------
        AlreadyRunningError
            If the process is still alive after ``ceiling_seconds``.
        """

        probe = exists or process_exists
        deadline = self._clock() + self._config.ceiling_seconds
        while probe(pid):
            if self._clock() >= deadline:
                raise AlreadyRunningError(
                    f"Host process {pid} is still running after "
                    f"{self._config.ceiling_seconds} seconds"
                )
            _LOGGER.info("Host process %s is still running. Waiting for exit...", pid)
            self._sleep(self._config.poll_interval_seconds)
        _LOGGER.info("Host process %s is not running.", pid)


__all__ = [
    "ExclusivityGuard",
    "ExclusivityToken",
    "get_lock_directory",
    "get_lock_file_path",
]
