"""Retry/cooldown policy.

``decide`` is a pure function of the job's history and the configuration; it
never reads the clock or the store, so identical inputs give identical answers.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from flowpatch.errors import FailureReason
from flowpatch.models import JobType
from flowpatch.policy import RetryConfig


class RetryableJob(Protocol):
    type: JobType
    attempt_count: int


@dataclass(frozen=True)
class Retry:
    after_minutes: float

    def not_before(self, failed_at: datetime) -> datetime:
        return failed_at + timedelta(minutes=self.after_minutes)


@dataclass(frozen=True)
class GiveUp:
    reason: str


Decision = Retry | GiveUp

# Failures that another attempt cannot fix
NON_RETRYABLE_REASONS = frozenset({FailureReason.CANCELED, FailureReason.APPROVAL_TIMEOUT})


def decide(
    job: RetryableJob,
    config: RetryConfig,
    reason: FailureReason = FailureReason.EXECUTOR_FAILURE,
) -> Decision:
    """Retry after the cooldown while attempts remain, otherwise give up."""
    if reason in NON_RETRYABLE_REASONS:
        return GiveUp(reason=reason.value)

    max_attempts = config.max_attempts(job.type)
    if job.attempt_count < max_attempts:
        return Retry(after_minutes=config.cooldown_minutes)
    return GiveUp(
        reason=f"{reason.value}: attempt {job.attempt_count} of {max_attempts}",
    )
