"""Constants shared across the updater modules."""

from __future__ import annotations

LOCK_DIR_ENV = "UPDATER_LOCK_DIR"
LOCK_FILE_PREFIX = "updater.instance"

UPDATE_FAILURE_MARKER_SUFFIX = ".update_failed.json"

ELEVATED_TRUE_VALUES = frozenset({"true", "1", "yes"})
ELEVATED_FALSE_VALUES = frozenset({"false", "0", "no"})
NO_HOST_PROCESS_IDS = frozenset({0, -1})

UPDATER_MODULE = "services.updater"
