"""Helpers for constructing the update session controller."""

from __future__ import annotations

import logging
from pathlib import Path

from app.config import UpdaterConfig, get_updater_config
from services.updater.elevation import Elevator, default_elevator
from services.updater.exclusivity import ExclusivityGuard
from services.updater.launcher import HostLauncher, SubprocessHostLauncher
from services.updater.retry import RetryPolicy
from services.updater.session import UpdateSessionController

_LOGGER = logging.getLogger(__name__)


def build_session_controller(
    config: UpdaterConfig | None = None,
    *,
    elevator: Elevator | None = None,
    launcher: HostLauncher | None = None,
    lock_dir: Path | None = None,
) -> UpdateSessionController:
    """Construct an :class:`UpdateSessionController` for the current platform."""

    config = config or get_updater_config()
    policy = RetryPolicy.from_config(config.retry)
    _LOGGER.debug(
        "Retry policy: %d attempts, %.3f s apart; lock identifier %s",
        policy.attempts,
        policy.delay_seconds,
        config.exclusivity.identifier,
    )
    return UpdateSessionController(
        ExclusivityGuard(config.exclusivity, lock_dir=lock_dir),
        elevator or default_elevator(),
        launcher or SubprocessHostLauncher(),
        host_executable_name=config.host.executable_name,
        policy=policy,
        resources_name=config.resources.directory_name,
        sentinel_name=config.probe.sentinel_name,
        pause_on_failure=config.failure.pause_on_failure,
    )


__all__ = ["build_session_controller"]
