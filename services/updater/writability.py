"""Probe whether the current user can write into a directory."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from services.updater.retry import RetryExhaustedError, RetryPolicy, run_with_retry

_LOGGER = logging.getLogger(__name__)

DEFAULT_SENTINEL_NAME = ".writable"


def can_write(
    directory: Path,
    policy: RetryPolicy,
    *,
    sentinel_name: str = DEFAULT_SENTINEL_NAME,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Return ``True`` if a sentinel file can be created and deleted in ``directory``.

    ACLs are not inspected: an actual write is the only answer that holds
    across privilege contexts and filesystems.
    """

    sentinel = directory / sentinel_name

    def _write_and_remove() -> None:
        try:
            sentinel.write_bytes(b"\x01")
        finally:
            _discard(sentinel)
        if sentinel.exists():
            raise PermissionError(f"Sentinel {sentinel} could not be removed")

    try:
        run_with_retry(f"Writing sentinel in {directory}", _write_and_remove, policy, sleep=sleep)
    except RetryExhaustedError as exc:
        _LOGGER.debug("Writability probe failed for %s: %s", directory, exc.last_error)
        return False
    return True


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        _LOGGER.debug("Unable to remove sentinel %s: %s", path, exc)


__all__ = ["DEFAULT_SENTINEL_NAME", "can_write"]
