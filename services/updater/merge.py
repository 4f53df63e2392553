"""Additive merge of the resources subtree."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from services.updater.models import MergeError

_LOGGER = logging.getLogger(__name__)


@dataclass
class MergeReport:
    """Relative paths touched by :func:`merge_additive`."""

    moved: list[Path] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)
    created_directories: list[Path] = field(default_factory=list)


def merge_additive(source_subtree: Path, target_subtree: Path) -> MergeReport:
    """Move files missing from ``target_subtree`` out of ``source_subtree``.

    Existing target files always win: they are never deleted or overwritten,
    and the matching source file is left where it is.  Missing directories are
    created before recursing into them.

    Raises
    ------
    MergeError
        If the source cannot be read or a file cannot be moved.
    """

    report = MergeReport()
    try:
        _merge_directory(source_subtree, target_subtree, Path(), report)
    except OSError as exc:
        raise MergeError(
            f"Failed to merge {source_subtree} into {target_subtree}: {exc}"
        ) from exc
    return report


def _merge_directory(source: Path, target: Path, relative: Path, report: MergeReport) -> None:
    _LOGGER.debug("Merging %s into %s", source, target)
    if not target.is_dir():
        _LOGGER.info("Directory didn't exist in target: %s", target)
        target.mkdir(parents=True, exist_ok=True)
        report.created_directories.append(relative)

    entries = sorted(source.iterdir(), key=lambda entry: entry.name)
    files = [entry for entry in entries if not entry.is_dir()]
    directories = [entry for entry in entries if entry.is_dir()]

    for entry in files:
        destination = target / entry.name
        if destination.exists():
            report.skipped.append(relative / entry.name)
            continue
        _LOGGER.info("%s exists in source directory but not in target directory. Moving...", entry.name)
        shutil.move(str(entry), str(destination))
        report.moved.append(relative / entry.name)

    for entry in directories:
        _merge_directory(entry, target / entry.name, relative / entry.name, report)


__all__ = ["MergeReport", "merge_additive"]
