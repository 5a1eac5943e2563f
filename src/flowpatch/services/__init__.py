"""Scheduling services: leases, queue, worktree pool, retry policy and label reconciliation."""

from flowpatch.services.events import Event, EventBus, EventType
from flowpatch.services.job_queue import EnqueueResult, JobQueue, PoolState
from flowpatch.services.lease_store import ClaimResult, Lease, LeaseStore
from flowpatch.services.logs import JobLogHub, LogChannel
from flowpatch.services.prioritization import (
    PriorityConfig,
    calculate_job_priority,
    priority_from_labels,
)
from flowpatch.services.reconciler import ReconcileReport, Reconciler
from flowpatch.services.retry_policy import GiveUp, Retry, decide
from flowpatch.services.worktree_pool import BranchHint, ReleaseOutcome, WorktreePool

__all__ = [
    "BranchHint",
    "ClaimResult",
    "EnqueueResult",
    "Event",
    "EventBus",
    "EventType",
    "GiveUp",
    "JobLogHub",
    "JobQueue",
    "Lease",
    "LeaseStore",
    "LogChannel",
    "PoolState",
    "PriorityConfig",
    "ReconcileReport",
    "Reconciler",
    "ReleaseOutcome",
    "Retry",
    "WorktreePool",
    "calculate_job_priority",
    "decide",
    "priority_from_labels",
]
