"""Bounded retry policy for filesystem calls that may hit transient locks."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from app.config import RetryConfig

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Maximum number of attempts and the fixed delay between them."""

    attempts: int = 10
    delay_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("RetryPolicy requires at least one attempt")
        if self.delay_seconds < 0:
            raise ValueError("RetryPolicy delay must not be negative")

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(attempts=config.attempts, delay_seconds=config.delay_seconds)


class RetryExhaustedError(OSError):
    """Raised once every attempt of a retried operation has failed."""

    def __init__(self, description: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


def run_with_retry(
    description: str,
    action: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``action`` until it succeeds or ``policy`` is exhausted.

    ``OSError`` raised by an attempt is treated as transient: it is logged at
    debug level and the call is repeated after ``policy.delay_seconds``.  Any
    other exception propagates immediately.
    """

    last_error: OSError | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return action()
        except OSError as exc:
            last_error = exc
            _LOGGER.debug(
                "%s attempt %d/%d failed: %s", description, attempt, policy.attempts, exc
            )
            if attempt < policy.attempts:
                sleep(policy.delay_seconds)

    assert last_error is not None
    raise RetryExhaustedError(description, policy.attempts, last_error) from last_error


__all__ = ["RetryExhaustedError", "RetryPolicy", "run_with_retry"]
