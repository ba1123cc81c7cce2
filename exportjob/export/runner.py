"""
Retry policy and driving loop for export jobs.

The policy owns attempt counting and the lifespan cutoff: a job is retried
only while its last outcome was retryable, fewer than max_attempts attempts
have run, and the lifespan measured from the first enqueue has not passed.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import FailureKind
from .job import utcnow
from .outcome import AttemptOutcome


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: timedelta = timedelta(0)
    final_outcome: Optional[AttemptOutcome] = None


@dataclass(frozen=True)
class RunReport:
    outcome: AttemptOutcome
    attempts: int


class RetryPolicy:
    """Bounded exponential-backoff retry policy with a lifespan cutoff."""

    def __init__(self, max_attempts: int = 3, lifespan: timedelta = timedelta(days=1),
                 initial_backoff: timedelta = timedelta(seconds=30), backoff_multiplier: float = 2.0,
                 max_backoff: timedelta = timedelta(hours=1)):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.max_attempts = max_attempts
        self.lifespan = lifespan
        self.initial_backoff = initial_backoff
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff = max_backoff

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        """Build a policy from EXPORT_* settings of a Flask config mapping."""
        return cls(
            max_attempts=config.get('EXPORT_MAX_ATTEMPTS', 3),
            lifespan=timedelta(seconds=config.get('EXPORT_LIFESPAN_SECONDS', 86400)),
            initial_backoff=timedelta(seconds=config.get('EXPORT_INITIAL_BACKOFF_SECONDS', 30)),
            max_backoff=timedelta(seconds=config.get('EXPORT_MAX_BACKOFF_SECONDS', 3600)),
        )

    def deadline(self, first_enqueued_at: datetime) -> datetime:
        return first_enqueued_at + self.lifespan

    def lifespan_exceeded(self, first_enqueued_at: datetime, now: datetime) -> bool:
        return now >= self.deadline(first_enqueued_at)

    def backoff(self, attempt_number: int) -> timedelta:
        """Delay before the attempt following attempt_number (1-based)."""
        seconds = self.initial_backoff.total_seconds() * (self.backoff_multiplier ** (attempt_number - 1))
        return min(timedelta(seconds=seconds), self.max_backoff)

    def decide(self, outcome: AttemptOutcome, attempt_number: int, first_enqueued_at: datetime,
               now: datetime) -> RetryDecision:
        """
        Decide what happens after an attempt.

        Args:
            outcome: Outcome of the attempt that just finished
            attempt_number: 1-based number of that attempt
            first_enqueued_at: When the job was first enqueued
            now: Current time

        Returns:
            RetryDecision; final_outcome is set when the job is finished
        """
        if not outcome.retryable:
            return RetryDecision(retry=False, final_outcome=outcome)

        if attempt_number >= self.max_attempts:
            logger.info(f"Retryable failure after {attempt_number} attempts; giving up")
            return RetryDecision(retry=False, final_outcome=outcome)

        delay = self.backoff(attempt_number)
        if self.lifespan_exceeded(first_enqueued_at, now + delay):
            return RetryDecision(retry=False, final_outcome=lifespan_exceeded_outcome())

        return RetryDecision(retry=True, delay=delay)


def lifespan_exceeded_outcome() -> AttemptOutcome:
    return AttemptOutcome.failure(FailureKind.LIFESPAN_EXCEEDED)


def run_with_retries(job_factory: Callable[[int], object], policy: RetryPolicy,
                     first_enqueued_at: Optional[datetime] = None,
                     clock: Callable[[], datetime] = utcnow,
                     sleep: Callable[[float], None] = time.sleep) -> RunReport:
    """
    Drive attempts of a job until it settles.

    Args:
        job_factory: Called with the 1-based attempt number; returns a fresh job with run()
        policy: Retry policy
        first_enqueued_at: Start of the lifespan (defaults to now)
        clock: Time source
        sleep: Called with the backoff delay in seconds between attempts

    Returns:
        RunReport with the final outcome and the number of attempts run
    """
    first_enqueued_at = first_enqueued_at or clock()
    attempts = 0

    while True:
        if policy.lifespan_exceeded(first_enqueued_at, clock()):
            logger.warning("Export job lifespan exceeded; refusing further attempts")
            return RunReport(lifespan_exceeded_outcome(), attempts)

        attempts += 1
        outcome = job_factory(attempts).run()

        decision = policy.decide(outcome, attempts, first_enqueued_at, clock())
        if not decision.retry:
            return RunReport(decision.final_outcome, attempts)

        logger.info(f"Attempt {attempts} failed ({outcome.failure_kind.value}); "
                    f"retrying in {decision.delay.total_seconds():.0f}s")
        sleep(decision.delay.total_seconds())
