"""Pydantic schemas for API request/response validation."""

from flowpatch.schemas.common import ErrorResponse, PaginatedResponse
from flowpatch.schemas.job import (
    DispatcherStatus,
    EnqueueResponse,
    InFlightJob,
    Job,
    JobCreate,
    JobQueueStats,
)
from flowpatch.schemas.payloads import JobPayload, parse_payload
from flowpatch.schemas.project import (
    PolicyUpdate,
    PolicyUpdateResponse,
    Project,
    ProjectCreate,
)
from flowpatch.schemas.worktree import Worktree

__all__ = [
    # Common
    "ErrorResponse",
    "PaginatedResponse",
    # Job
    "DispatcherStatus",
    "EnqueueResponse",
    "InFlightJob",
    "Job",
    "JobCreate",
    "JobQueueStats",
    # Payloads
    "JobPayload",
    "parse_payload",
    # Project
    "PolicyUpdate",
    "PolicyUpdateResponse",
    "Project",
    "ProjectCreate",
    # Worktree
    "Worktree",
]
