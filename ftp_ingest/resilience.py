"""Retry policy for reopening interrupted transfers.

Reopening is modelled as a small state machine driven by tenacity:

    ATTEMPTING(1) -> WAITING -> ATTEMPTING(2) -> ... -> SUCCEEDED
                                                    \\-> EXHAUSTED
    WAITING -> CANCELLED  (the caller gave up during a backoff wait)

Every exception raised by an attempt is retryable except
TransferCancelledError. The sleep function is injectable so tests can
drive the machine without real waits.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, TypeVar

import tenacity

from ftp_ingest.errors import TransferCancelledError

logger = logging.getLogger(__name__)

__all__ = [
    "ReopenPolicy",
    "ReopenProgress",
    "ReopenState",
    "cancellable_sleep",
    "reopen_with_retry",
]

T = TypeVar("T")


class ReopenState(Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReopenPolicy:
    """How hard to try reopening a transfer after a read failure.

    ``max_retries`` counts retries after the first attempt, so the default
    allows four calls in total.
    """

    max_retries: int = 3
    initial_wait: float = 0.5
    max_wait: float = 30.0

    @classmethod
    def none(cls) -> "ReopenPolicy":
        """Single attempt, no retries."""
        return cls(max_retries=0)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def wait_for(self, attempt_number: int) -> float:
        """Seconds to wait after failed attempt ``attempt_number`` (1-based)."""
        return min(self.initial_wait * 2 ** (attempt_number - 1), self.max_wait)


@dataclass
class ReopenProgress:
    """Observable state of the most recent reopen sequence."""

    state: ReopenState = ReopenState.IDLE
    attempt: int = 0
    waits: List[float] = field(default_factory=list)

    def reset(self) -> None:
        self.state = ReopenState.IDLE
        self.attempt = 0
        self.waits = []


def cancellable_sleep(cancel_event: threading.Event) -> Callable[[float], None]:
    """Sleep function that raises TransferCancelledError once the event is set."""

    def sleep(seconds: float) -> None:
        if cancel_event.wait(seconds):
            raise TransferCancelledError("Transfer cancelled while waiting to retry")

    return sleep


def reopen_with_retry(
    operation: Callable[[], T],
    policy: ReopenPolicy,
    *,
    description: str = "FTP GET request",
    sleep: Optional[Callable[[float], None]] = None,
    progress: Optional[ReopenProgress] = None,
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` is exhausted.

    Args:
        operation: Opens the new stream
        policy: Attempt limit and backoff curve
        description: Used in log messages
        sleep: Wait function; defaults to time.sleep
        progress: Updated with the current state as the machine advances

    Returns:
        Whatever ``operation`` returned

    Raises:
        TransferCancelledError: If cancelled during a wait or an attempt
        Exception: The last attempt's error once attempts are exhausted
    """
    progress = progress if progress is not None else ReopenProgress()
    progress.reset()
    sleep_fn = sleep or time.sleep

    def before_sleep(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        progress.state = ReopenState.WAITING
        progress.waits.append(wait)
        logger.warning(
            "%s failed. Retrying %d/%d after %.1f seconds. Message: %s",
            description,
            retry_state.attempt_number,
            policy.max_retries,
            wait,
            exception,
            exc_info=exception if retry_state.attempt_number % 3 == 0 else None,
        )

    retryer = tenacity.Retrying(
        stop=tenacity.stop_after_attempt(policy.max_attempts),
        wait=tenacity.wait_exponential(
            multiplier=policy.initial_wait, min=policy.initial_wait, max=policy.max_wait
        ),
        retry=tenacity.retry_if_not_exception_type(TransferCancelledError),
        before_sleep=before_sleep,
        sleep=sleep_fn,
        reraise=True,
    )

    try:
        for attempt in retryer:
            with attempt:
                progress.state = ReopenState.ATTEMPTING
                progress.attempt = attempt.retry_state.attempt_number
                result = operation()
    except TransferCancelledError:
        progress.state = ReopenState.CANCELLED
        raise
    except Exception:
        progress.state = ReopenState.EXHAUSTED
        logger.error("%s failed after %d attempts", description, progress.attempt)
        raise

    progress.state = ReopenState.SUCCEEDED
    return result
