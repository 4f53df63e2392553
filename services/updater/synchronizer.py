"""Destructive replacement of the target directory's top-level entries."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from services.updater.models import SyncError
from services.updater.retry import RetryExhaustedError, RetryPolicy, run_with_retry

_LOGGER = logging.getLogger(__name__)

DEFAULT_RESOURCES_NAME = "Resources"


class EntryKind(str, Enum):
    RESOURCES = "resources"
    ORDINARY = "ordinary"


def classify_entry(entry: Path, resources_name: str = DEFAULT_RESOURCES_NAME) -> EntryKind:
    """Classify a top-level entry.  Only a directory can be the resources subtree."""

    if entry.is_dir() and entry.name.casefold() == resources_name.casefold():
        return EntryKind.RESOURCES
    return EntryKind.ORDINARY


def find_resources_directory(
    directory: Path, resources_name: str = DEFAULT_RESOURCES_NAME
) -> Path | None:
    """Return the resources subtree inside ``directory`` regardless of name casing."""

    for entry in sorted(directory.iterdir(), key=lambda item: item.name):
        if classify_entry(entry, resources_name) is EntryKind.RESOURCES:
            return entry
    return None


@dataclass
class TopLevelEntries:
    directories: list[Path] = field(default_factory=list)
    files: list[Path] = field(default_factory=list)


@dataclass
class SyncReport:
    """Names handled by :func:`sync_destructive`, in the order they were processed."""

    removed_directories: list[str] = field(default_factory=list)
    removed_files: list[str] = field(default_factory=list)
    moved_files: list[str] = field(default_factory=list)
    moved_directories: list[str] = field(default_factory=list)


def list_ordinary_entries(
    directory: Path, resources_name: str = DEFAULT_RESOURCES_NAME
) -> TopLevelEntries:
    """Return the top-level directories and files of ``directory`` minus the resources subtree."""

    entries = TopLevelEntries()
    for entry in sorted(directory.iterdir(), key=lambda item: item.name):
        if classify_entry(entry, resources_name) is EntryKind.RESOURCES:
            continue
        if entry.is_dir() and not entry.is_symlink():
            entries.directories.append(entry)
        else:
            entries.files.append(entry)
    return entries


def sync_destructive(
    source_dir: Path,
    target_dir: Path,
    policy: RetryPolicy,
    *,
    resources_name: str = DEFAULT_RESOURCES_NAME,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncReport:
    """Replace every ordinary top-level entry of ``target_dir`` with ``source_dir``'s.

    All deletions happen before any move, so stale and fresh files are never
    mixed under one name.  Each delete/move is retried according to
    ``policy``.

    Raises
    ------
    SyncError
        When enumeration fails or any single operation exhausts its budget.
        The target may then hold a mix of removed and not yet replaced
        entries.
    """

    report = SyncReport()
    try:
        source_entries = list_ordinary_entries(source_dir, resources_name)
        target_entries = list_ordinary_entries(target_dir, resources_name)
    except OSError as exc:
        raise SyncError(f"Failed to enumerate update directories: {exc}") from exc

    def _retry(description: str, action: Callable[[], Any]) -> None:
        run_with_retry(description, action, policy, sleep=sleep)

    try:
        for directory in target_entries.directories:
            _LOGGER.info("Attempting to remove target directory: %s", directory)
            _retry(f"Removing directory {directory}", lambda path=directory: _remove_tree(path))
            report.removed_directories.append(directory.name)

        for file_path in target_entries.files:
            _LOGGER.info("Attempting to remove target file: %s", file_path)
            _retry(f"Removing file {file_path}", lambda path=file_path: _remove_file(path))
            report.removed_files.append(file_path.name)

        for file_path in source_entries.files:
            destination = target_dir / file_path.name
            _LOGGER.info("Attempting to move file to target directory: %s", file_path)
            _retry(
                f"Moving file {file_path}",
                lambda path=file_path, dest=destination: _move(path, dest),
            )
            report.moved_files.append(file_path.name)

        for directory in source_entries.directories:
            destination = target_dir / directory.name
            _LOGGER.info("Attempting to move directory to target directory: %s", directory)
            _retry(
                f"Moving directory {directory}",
                lambda path=directory, dest=destination: _move(path, dest),
            )
            report.moved_directories.append(directory.name)
    except RetryExhaustedError as exc:
        raise SyncError(str(exc)) from exc

    return report


def _remove_tree(path: Path) -> None:
    if not path.exists():
        return
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_clear_readonly_and_retry)
    else:
        shutil.rmtree(path, onerror=_clear_readonly_and_retry)


def _remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except PermissionError:
        if not _clear_readonly(path):
            raise
        path.unlink()


def _move(source: Path, destination: Path) -> None:
    if not source.exists() and not source.is_symlink():
        if destination.exists():
            # An earlier attempt already completed the move.
            return
        raise FileNotFoundError(f"Staged entry {source} no longer exists")
    if source.is_dir() and destination.is_dir():
        # Left behind by a cross-volume copy that failed part way.
        _remove_tree(destination)
    shutil.move(str(source), str(destination))


def _clear_readonly(path: Path) -> bool:
    try:
        mode = os.lstat(path).st_mode
    except OSError:
        return False
    if mode & stat.S_IWRITE:
        return False
    os.chmod(path, mode | stat.S_IWRITE)
    return True


def _clear_readonly_and_retry(func: Callable[[str], object], path: str, exc: Any) -> None:
    """``shutil.rmtree`` error hook: drop the read-only bit and repeat the call once."""

    error = exc[1] if isinstance(exc, tuple) else exc
    if not _clear_readonly(Path(path)):
        raise error
    func(path)


__all__ = [
    "DEFAULT_RESOURCES_NAME",
    "EntryKind",
    "SyncReport",
    "TopLevelEntries",
    "classify_entry",
    "find_resources_directory",
    "list_ordinary_entries",
    "sync_destructive",
]
