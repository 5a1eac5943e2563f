"""SQLAlchemy models."""

from flowpatch.models.base import Base, utcnow
from flowpatch.models.job import ACTIVE_JOB_STATES, Job, JobState, JobType, make_dedupe_key
from flowpatch.models.project import Project
from flowpatch.models.worktree import SLOT_HOLDING_STATUSES, Worktree, WorktreeStatus

__all__ = [
    "ACTIVE_JOB_STATES",
    "Base",
    "Job",
    "JobState",
    "JobType",
    "Project",
    "SLOT_HOLDING_STATUSES",
    "Worktree",
    "WorktreeStatus",
    "make_dedupe_key",
    "utcnow",
]
