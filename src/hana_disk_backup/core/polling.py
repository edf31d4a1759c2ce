"""Bounded backoff and cancellation for blocking external calls.

Cloud operations are modelled as poll loops. Every loop has a retry budget
(initial interval, multiplier, interval cap, attempt cap) and observes a
Deadline, so a run can never wait forever and a cancel request wakes up any
sleeping poll immediately.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from ..errors import PollTimeoutError, WorkflowCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry budget of one poll loop.

    Attributes:
        initial_interval: Seconds to wait after the first attempt
        multiplier: Growth factor of the wait between attempts
        max_interval: Upper bound of a single wait in seconds
        max_attempts: Attempts before the loop gives up
    """

    initial_interval: float = 5.0
    multiplier: float = 2.0
    max_interval: float = 120.0
    max_attempts: int = 10

    def __post_init__(self):
        if self.initial_interval < 0 or self.max_interval < 0:
            raise ValueError("backoff intervals must not be negative")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("backoff needs at least one attempt")

    def intervals(self) -> list[float]:
        """Waits between consecutive attempts."""
        return [
            min(self.initial_interval * self.multiplier**i, self.max_interval)
            for i in range(self.max_attempts - 1)
        ]


class PollPending(Exception):
    """Raised by a poll check while the watched resource is not ready yet."""


class Deadline:
    """Cancellation signal with an optional wall-clock limit.

    Cleanup calls do not take a Deadline; thawing a filesystem and closing a
    database snapshot run even after cancellation.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = clock() + timeout if timeout else None
        self._cancelled = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, what: str = "operation") -> None:
        """Raise WorkflowCancelled if the run may not continue."""
        if self.cancelled:
            raise WorkflowCancelled(f"{what} interrupted: {self.reason}")
        if self.expired():
            raise WorkflowCancelled(f"{what} interrupted: deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep, waking early when cancelled or when the deadline passes."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._cancelled.wait(max(0.0, seconds))


def _stop_on_deadline(deadline: Deadline):
    def stop(retry_state) -> bool:
        return deadline.expired()

    return stop


def poll(
    check: Callable[[], T],
    policy: BackoffPolicy,
    deadline: Deadline,
    description: str,
) -> T:
    """Call check until it stops raising PollPending.

    Any other exception from check propagates immediately as a terminal
    failure. Running out of attempts raises PollTimeoutError; cancellation
    raises WorkflowCancelled.
    """

    def attempt() -> T:
        deadline.check(description)
        return check()

    logger.debug(
        "Polling %s, waits between attempts: %s", description, policy.intervals()
    )
    retrying = Retrying(
        stop=stop_any(
            stop_after_attempt(policy.max_attempts), _stop_on_deadline(deadline)
        ),
        wait=wait_exponential(
            multiplier=policy.initial_interval,
            exp_base=policy.multiplier,
            max=policy.max_interval,
        ),
        retry=retry_if_exception_type(PollPending),
        sleep=deadline.sleep,
        before_sleep=before_sleep_log(logger, logging.DEBUG),
    )
    try:
        return retrying(attempt)
    except RetryError as e:
        deadline.check(description)
        attempts = e.last_attempt.attempt_number
        last = e.last_attempt.exception()
        raise PollTimeoutError(
            f"{description} did not complete after {attempts} attempts: {last}"
        ) from last


def call_with_retry(
    func: Callable[[], T],
    policy: BackoffPolicy,
    is_transient: Callable[[BaseException], bool],
    deadline: Optional[Deadline] = None,
) -> T:
    """Call func, retrying errors that is_transient accepts.

    The last error is re-raised unchanged once the budget is exhausted.
    """
    stop = stop_after_attempt(policy.max_attempts)
    sleep = time.sleep
    if deadline is not None:
        stop = stop_any(stop, _stop_on_deadline(deadline))
        sleep = deadline.sleep
    retrying = Retrying(
        stop=stop,
        wait=wait_exponential(
            multiplier=policy.initial_interval,
            exp_base=policy.multiplier,
            max=policy.max_interval,
        ),
        retry=retry_if_exception(is_transient),
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retrying(func)
