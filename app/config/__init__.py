"""Updater configuration loaded from JSON resources."""

from __future__ import annotations

import json
from dataclasses import dataclass
from importlib import resources
from math import isfinite
from pathlib import Path
from typing import Any, Mapping

_CONFIG_RESOURCE = "updater.json"
_UPDATER_CONFIG_CACHE: UpdaterConfig | None = None

_DEFAULT_ATTEMPTS = 10
_DEFAULT_DELAY_MS = 100
_DEFAULT_IDENTIFIER = "XSOverlayVRChatParserUpdater"
_DEFAULT_POLL_INTERVAL_MS = 100
_DEFAULT_CEILING_SECONDS = 300
_DEFAULT_SENTINEL_NAME = ".writable"
_DEFAULT_RESOURCES_NAME = "Resources"
_DEFAULT_HOST_EXECUTABLE = "XSOverlay VRChat Parser.exe"
_DEFAULT_LOG_VERBOSITY = "info"
_LOG_VERBOSITIES = ("error", "warning", "info", "verbose")


@dataclass(frozen=True)
class RetryConfig:
    """Budget applied to every retried filesystem operation."""

    attempts: int
    delay_ms: int

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000.0


@dataclass(frozen=True)
class ExclusivityConfig:
    """Settings for the system-wide updater lock and host exit polling."""

    identifier: str
    poll_interval_ms: int
    ceiling_seconds: int

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


@dataclass(frozen=True)
class ProbeConfig:
    sentinel_name: str


@dataclass(frozen=True)
class ResourcesConfig:
    directory_name: str


@dataclass(frozen=True)
class HostConfig:
    executable_name: str


@dataclass(frozen=True)
class FailureConfig:
    pause_on_failure: bool


@dataclass(frozen=True)
class LoggingConfig:
    """Minimum severity written to the log file (``error`` to ``verbose``)."""

    verbosity: str


@dataclass(frozen=True)
class UpdaterConfig:
    """Structured configuration values for the updater."""

    retry: RetryConfig
    exclusivity: ExclusivityConfig
    probe: ProbeConfig
    resources: ResourcesConfig
    host: HostConfig
    failure: FailureConfig
    logging: LoggingConfig


def get_updater_config() -> UpdaterConfig:
    """Return the cached updater configuration."""

    global _UPDATER_CONFIG_CACHE
    if _UPDATER_CONFIG_CACHE is None:
        _UPDATER_CONFIG_CACHE = load_updater_config()
    return _UPDATER_CONFIG_CACHE


def reset_updater_config_cache() -> None:
    """Reset the cached configuration for subsequent reloads."""

    global _UPDATER_CONFIG_CACHE
    _UPDATER_CONFIG_CACHE = None


def load_updater_config(path: str | Path | None = None) -> UpdaterConfig:
    """Load configuration from ``path`` or the bundled JSON resource."""

    data = _read_config_data(path)
    return UpdaterConfig(
        retry=_parse_retry_section(_section(data, "retry")),
        exclusivity=_parse_exclusivity_section(_section(data, "exclusivity")),
        probe=ProbeConfig(
            sentinel_name=_coerce_name(
                _section(data, "probe").get("sentinel_name"), default=_DEFAULT_SENTINEL_NAME
            )
        ),
        resources=ResourcesConfig(
            directory_name=_coerce_name(
                _section(data, "resources").get("directory_name"),
                default=_DEFAULT_RESOURCES_NAME,
            )
        ),
        host=HostConfig(
            executable_name=_coerce_name(
                _section(data, "host").get("executable_name"), default=_DEFAULT_HOST_EXECUTABLE
            )
        ),
        failure=FailureConfig(
            pause_on_failure=_coerce_bool(
                _section(data, "failure").get("pause_on_failure"), default=True
            )
        ),
        logging=LoggingConfig(
            verbosity=_coerce_choice(
                _section(data, "logging").get("verbosity"),
                choices=_LOG_VERBOSITIES,
                default=_DEFAULT_LOG_VERBOSITY,
            )
        ),
    )


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    section = data.get(key) if isinstance(data, Mapping) else None
    if isinstance(section, Mapping):
        return section
    return {}


def _read_config_data(path: str | Path | None) -> Mapping[str, Any]:
    if path is not None:
        return _load_json_from_path(Path(path).expanduser())
    return _load_default_config_data()


def _load_json_from_path(path: Path) -> Mapping[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    return _parse_json(raw)


def _load_default_config_data() -> Mapping[str, Any]:
    try:
        resource = resources.files(__package__).joinpath(_CONFIG_RESOURCE)
        raw = resource.read_text(encoding="utf-8")
    except (FileNotFoundError, OSError):
        return {}
    return _parse_json(raw)


def _parse_json(raw: str) -> Mapping[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, Mapping):
        return parsed
    return {}


def _parse_retry_section(section: Mapping[str, Any]) -> RetryConfig:
    attempts = _coerce_positive_int(section.get("attempts"), default=_DEFAULT_ATTEMPTS)
    delay = _coerce_non_negative_int(section.get("delay_ms"), default=_DEFAULT_DELAY_MS)
    return RetryConfig(attempts=attempts, delay_ms=delay)


def _parse_exclusivity_section(section: Mapping[str, Any]) -> ExclusivityConfig:
    identifier = _coerce_name(section.get("identifier"), default=_DEFAULT_IDENTIFIER)
    interval = _coerce_positive_int(
        section.get("poll_interval_ms"), default=_DEFAULT_POLL_INTERVAL_MS
    )
    ceiling = _coerce_positive_int(
        section.get("ceiling_seconds"), default=_DEFAULT_CEILING_SECONDS
    )
    return ExclusivityConfig(
        identifier=identifier, poll_interval_ms=interval, ceiling_seconds=ceiling
    )


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        candidate = float(value)
    elif isinstance(value, str):
        try:
            candidate = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not isfinite(candidate):
        return None
    return candidate


def _coerce_positive_int(value: Any, *, default: int) -> int:
    candidate = _coerce_number(value)
    if candidate is None or int(candidate) <= 0:
        return default
    return int(candidate)


def _coerce_non_negative_int(value: Any, *, default: int) -> int:
    candidate = _coerce_number(value)
    if candidate is None or int(candidate) < 0:
        return default
    return int(candidate)


def _coerce_name(value: Any, *, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _coerce_choice(value: Any, *, choices: tuple[str, ...], default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in choices:
        return value.strip().lower()
    return default


def _coerce_bool(value: Any, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes", "on"}:
            return True
        if lowered in {"false", "0", "no", "off"}:
            return False
    return default


__all__ = [
    "ExclusivityConfig",
    "FailureConfig",
    "HostConfig",
    "LoggingConfig",
    "ProbeConfig",
    "ResourcesConfig",
    "RetryConfig",
    "UpdaterConfig",
    "get_updater_config",
    "load_updater_config",
    "reset_updater_config_cache",
]
