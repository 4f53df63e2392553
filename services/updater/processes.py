"""Process liveness queries."""

from __future__ import annotations

import logging

import psutil

_LOGGER = logging.getLogger(__name__)


def process_exists(pid: int) -> bool:
    """Return ``True`` while ``pid`` refers to a running process.

    A PID that cannot be found, or that belongs to a zombie waiting to be
    reaped, counts as exited.
    """

    if pid <= 0:
        return False
    try:
        process = psutil.Process(pid)
        return process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        _LOGGER.debug("Access denied while querying process %s; assuming it is running", pid)
        return True


__all__ = ["process_exists"]
