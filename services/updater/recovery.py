"""Record critical update failures so the host can report them on next start."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from services.updater.constants import UPDATE_FAILURE_MARKER_SUFFIX

_LOGGER = logging.getLogger(__name__)

_ADVICE_LOCKED = (
    "Close any other programs that might be using the installation folder "
    "(for example File Explorer or Command Prompt) and run the updater again."
)
_ADVICE_DENIED = "Ensure you have permission to modify the installation folder and try again."
_ADVICE_DEFAULT = "Run the updater again or reinstall the application."


def get_failure_marker_path(install_root: Path) -> Path:
    """Return the sentinel file path used to record update failures."""

    return install_root.parent / f"{install_root.name}{UPDATE_FAILURE_MARKER_SUFFIX}"


def advice_for_error(message: str) -> str:
    lowered = message.lower()
    if "in use" in lowered or "used by another process" in lowered or "busy" in lowered:
        return _ADVICE_LOCKED
    if "access is denied" in lowered or "permission denied" in lowered:
        return _ADVICE_DENIED
    return _ADVICE_DEFAULT


def record_update_failure(install_root: Path, reason: str, log_path: Path | None) -> Path | None:
    """Write the failure marker next to ``install_root``; never raises."""

    marker_path = get_failure_marker_path(install_root)
    payload = {
        "reason": reason,
        "advice": advice_for_error(reason),
        "log_path": str(log_path) if log_path is not None else None,
        "recorded_at": datetime.now().astimezone().isoformat(),
    }
    try:
        marker_path.write_text(json.dumps(payload), encoding="utf-8")
    except OSError:
        _LOGGER.warning("Failed to record update failure marker at %s", marker_path, exc_info=True)
        return None
    return marker_path


def clear_update_failure(install_root: Path) -> None:
    _safe_remove(get_failure_marker_path(install_root))


def consume_update_failure_notice(install_root: Path) -> tuple[str, str] | None:
    """Return the recorded failure reason and advice, removing the marker."""

    marker_path = get_failure_marker_path(install_root)
    if not marker_path.exists():
        return None

    try:
        payload = json.loads(marker_path.read_text(encoding="utf-8-sig"))
    except (OSError, json.JSONDecodeError):
        _LOGGER.debug("Unable to parse update failure marker at %s", marker_path, exc_info=True)
        _safe_remove(marker_path)
        return None

    if not isinstance(payload, dict):
        _safe_remove(marker_path)
        return None

    reason = _coerce_text(payload.get("reason"), default="Unknown error.")
    advice = _coerce_text(payload.get("advice"), default=_ADVICE_DEFAULT)

    _safe_remove(marker_path)
    return reason, advice


def _coerce_text(value: Any, *, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return default


def _safe_remove(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError:
        _LOGGER.debug("Unable to remove update failure marker at %s", path, exc_info=True)


__all__ = [
    "advice_for_error",
    "clear_update_failure",
    "consume_update_failure_notice",
    "get_failure_marker_path",
    "record_update_failure",
]
