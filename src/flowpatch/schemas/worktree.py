"""Worktree schemas for API responses."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from flowpatch.models.worktree import WorktreeStatus


class Worktree(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: UUID
    branch_name: str
    base_ref: str
    path: str
    status: WorktreeStatus
    slot: int | None = None
    locked_by_job_id: UUID | None = None
    lock_expires_at: datetime | None = None
    run_count: int
    last_error: str | None = None
    cleanup_requested_at: datetime | None = None
    cleanup_after: datetime | None = None
    created_at: datetime
    updated_at: datetime
