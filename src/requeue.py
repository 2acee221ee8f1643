"""
Requeue Scheduler - Reconcile outcomes and exponential backoff.

Failures are retried with a delay that doubles per consecutive failure up
to a fixed cap. A success resets the sequence. Retries never stop; the cap
only bounds how far apart they are.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from models import StatusBlock


class RequeueAction(Enum):
    """What the dispatcher should do after a pass."""

    NO_REQUEUE = "no_requeue"
    REQUEUE_AFTER = "requeue_after"
    REQUEUE_IMMEDIATELY = "requeue_immediately"


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of one reconciliation pass."""

    action: RequeueAction
    delay: float = 0.0
    reason: str = ""
    error: Optional[str] = None
    # Generation the pass worked on; None if the record was not found
    generation: Optional[int] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def no_requeue(
        cls, reason: str = "", error: Optional[str] = None
    ) -> "ReconcileOutcome":
        return cls(RequeueAction.NO_REQUEUE, reason=reason, error=error)

    @classmethod
    def requeue_after(
        cls, delay: float, reason: str = "", error: Optional[str] = None
    ) -> "ReconcileOutcome":
        return cls(RequeueAction.REQUEUE_AFTER, delay=delay, reason=reason, error=error)

    @classmethod
    def requeue_immediately(cls, reason: str = "") -> "ReconcileOutcome":
        return cls(RequeueAction.REQUEUE_IMMEDIATELY, reason=reason)


class RequeueScheduler:
    """
    Computes retry delays from the failure history in the status block.

    Args:
        base_delay: Delay after the first failure, in seconds.
        max_delay: Upper bound for any delay, in seconds.
        jitter_factor: Fraction of each step the delay may be shortened by at
            random. A jittered delay never drops below the previous step,
            so delays never shrink across consecutive failures.
        rng: Source of uniform [0, 1) values, injectable for tests.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 3600.0,
        jitter_factor: float = 0.0,
        rng: Callable[[], float] = random.random,
    ):
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._rng = rng


    def step_delay(self, failures: int) -> float:
        """Jitter-free delay after `failures` consecutive failures."""
        if failures <= 0:
            return 0.0
        delay = self.base_delay
        for _ in range(failures - 1):
            delay = min(delay * 2, self.max_delay)
            if delay >= self.max_delay:
                break
        return delay

    def backoff_delay(self, failures: int) -> float:
        """Delay before the next attempt after `failures` consecutive failures."""
        delay = self.step_delay(failures)
        if self.jitter_factor:
            floor = self.step_delay(failures - 1)
            delay = max(delay * (1 - self._rng() * self.jitter_factor), floor)
        return delay

    def next_delay(self, status: Optional[StatusBlock]) -> float:
        """Delay for the current failure history; the base delay without one."""
        if status is None:
            return self.base_delay
        return self.backoff_delay(status.consecutive_failures)

    def on_failure(
        self,
        status: Optional[StatusBlock],
        now: datetime,
        permanent: bool = False,
    ) -> float:
        """Record a failure in the status block and return the retry delay."""
        if status is None:
            return self.base_delay

        status.consecutive_failures += 1
        status.last_failure_time = now
        if permanent:
            status.retry_delay = self.max_delay
        else:
            status.retry_delay = self.next_delay(status)
        return status.retry_delay

    def on_success(self, status: Optional[StatusBlock]) -> None:
        """Reset the failure history."""
        if status is None:
            return
        status.consecutive_failures = 0
        status.last_failure_time = None
        status.retry_delay = None

    def remaining_delay(self, status: Optional[StatusBlock], now: datetime) -> float:
        """
        Seconds left in the current backoff window.

        Measured from the last failure against the delay armed by that
        failure; zero when there is no failure history or the window has
        passed.
        """
        if status is None or not status.consecutive_failures:
            return 0.0
        if status.last_failure_time is None:
            return 0.0
        window = status.retry_delay
        if window is None:
            window = self.step_delay(status.consecutive_failures)
        elapsed = (now - status.last_failure_time).total_seconds()
        return max(window - elapsed, 0.0)
