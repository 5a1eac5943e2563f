"""Error taxonomy for scheduling and worktree orchestration.

Everything below the dispatcher is caught and turned into a job or worktree
state transition; these types exist so callers can tell the failures apart.
"""

from enum import Enum


class FailureReason(str, Enum):
    """Reason codes recorded on a failed job's result."""

    EXECUTOR_FAILURE = "executor_failure"
    TIMEOUT = "timeout"
    WORKTREE_CREATION = "worktree_creation"
    LEASE_LOST = "lease_lost"
    CANCELED = "canceled"
    APPROVAL_TIMEOUT = "approval_timeout"
    NO_RESULT = "no_result"


class FlowpatchError(Exception):
    """Base class for all flowpatch errors."""


class ClaimConflict(FlowpatchError):
    """Another owner already holds a valid lease on the job."""

    def __init__(self, job_id: object, message: str | None = None):
        self.job_id = job_id
        super().__init__(message or f"Job {job_id} is already leased")


class CapacityExhausted(FlowpatchError):
    """No worker slot or worktree slot is available."""


class ExecutorFailure(FlowpatchError):
    """The executor reported failure, crashed or produced no result."""

    reason = FailureReason.EXECUTOR_FAILURE

    def __init__(self, message: str, reason: FailureReason | None = None):
        if reason is not None:
            self.reason = reason
        super().__init__(message)


class ExecutorTimeout(ExecutorFailure):
    """The executor exceeded the maximum execution duration."""

    reason = FailureReason.TIMEOUT

    def __init__(self, minutes: float):
        self.minutes = minutes
        super().__init__(f"Execution exceeded {minutes:g} minutes")


class WorktreeError(FlowpatchError):
    """A git or filesystem operation on a worktree failed."""


class WorktreeCreationFailure(WorktreeError):
    """A new worktree could not be materialized."""


class LeaseLost(FlowpatchError):
    """Lease renewal failed; the current owner must stop and discard its result."""

    def __init__(self, job_id: object):
        self.job_id = job_id
        super().__init__(f"Lease lost for job {job_id}")


class ReconciliationFailure(FlowpatchError):
    """Remote label update failed. Reported as a diagnostic, never fatal."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class InvalidTransition(FlowpatchError):
    """A requested state change is not allowed from the current state."""
