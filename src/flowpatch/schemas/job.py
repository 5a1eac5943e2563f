"""Job schemas for API request/response."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from flowpatch.models.job import JobState, JobType


class JobCreate(BaseModel):
    """Request body for enqueueing a job."""

    project_id: UUID
    type: JobType
    card_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int | None = Field(default=None, description="Lower runs first; derived when omitted")


class EnqueueResponse(BaseModel):
    job_id: UUID
    created: bool


class Job(BaseModel):
    """Job response model."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: JobType
    project_id: UUID
    card_id: str | None = None
    payload: dict[str, Any]
    state: JobState
    priority: int
    attempt_count: int
    not_before: datetime
    lease_owner_id: str | None = None
    lease_expires_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    finished_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobQueueStats(BaseModel):
    """Job counts by state and by type."""

    by_state: dict[str, int]
    by_type: dict[str, int]
    total: int


class InFlightJob(BaseModel):
    job_id: UUID
    type: JobType
    project_id: UUID
    worktree_id: UUID | None = None
    phase: str
    started_at: datetime


class DispatcherStatus(BaseModel):
    owner_id: str
    running: bool
    max_workers: int
    queue_strategy: str
    executing: list[InFlightJob] = Field(default_factory=list)
