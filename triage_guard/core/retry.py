"""
Bounded attempt driver for provider calls.

Each attempt reports an explicit outcome; the driver stops on success or a
fatal failure and gives up after the configured number of retryable failures.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Optional, Tuple


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

# Base delay before retrying a rate-limited call, scaled by attempt number
RATE_LIMIT_BACKOFF_SECONDS = 1.5


class AttemptStatus(Enum):
    """Terminal state of a single call attempt."""
    SUCCESS = auto()
    RETRYABLE = auto()
    FATAL = auto()


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one call attempt."""
    status: AttemptStatus
    value: Any = None
    reason: Optional[str] = None
    backoff_seconds: float = 0.0
    bad_request: bool = False

    @classmethod
    def success(cls, value: Any) -> "AttemptOutcome":
        return cls(AttemptStatus.SUCCESS, value=value)

    @classmethod
    def retryable(cls, reason: str, backoff_seconds: float = 0.0, bad_request: bool = False) -> "AttemptOutcome":
        return cls(
            AttemptStatus.RETRYABLE,
            reason=reason,
            backoff_seconds=backoff_seconds,
            bad_request=bad_request,
        )

    @classmethod
    def fatal(cls, reason: str) -> "AttemptOutcome":
        return cls(AttemptStatus.FATAL, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.status == AttemptStatus.SUCCESS


AttemptFn = Callable[[int, Optional[AttemptOutcome]], AttemptOutcome]


def run_attempts(
    attempt_fn: AttemptFn,
    max_attempts: int = MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[AttemptOutcome, int]:
    """Drive ``attempt_fn`` until success, a fatal failure, or exhaustion.

    Args:
        attempt_fn: Called with the 1-based attempt number and the previous outcome
        max_attempts: Upper bound on attempts
        sleep: Backoff primitive, injectable for tests

    Returns:
        Tuple of (last outcome, attempts made)
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    previous: Optional[AttemptOutcome] = None
    for attempt in range(1, max_attempts + 1):
        outcome = attempt_fn(attempt, previous)
        if outcome.status != AttemptStatus.RETRYABLE:
            return outcome, attempt

        logger.warning("Attempt %d/%d failed: %s", attempt, max_attempts, outcome.reason)
        if attempt < max_attempts and outcome.backoff_seconds > 0:
            sleep(outcome.backoff_seconds)
        previous = outcome

    return previous, max_attempts
