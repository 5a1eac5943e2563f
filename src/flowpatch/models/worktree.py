"""Worktree model - an isolated git working copy bound to at most one job."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from flowpatch.models.base import Base, TimestampMixin, UTCDateTime, UUIDMixin, enum_column


class WorktreeStatus(str, Enum):
    """Lifecycle status of a worktree."""

    CREATING = "creating"  # Branch/directory being materialized
    READY = "ready"  # Idle, reusable
    RUNNING = "running"  # Locked by a job
    CLEANUP_PENDING = "cleanup_pending"  # Waiting for the cleanup sweep
    CLEANED = "cleaned"  # Directory removed
    ERROR = "error"  # Irrecoverable git/filesystem failure


SLOT_HOLDING_STATUSES = frozenset(
    {WorktreeStatus.CREATING, WorktreeStatus.READY, WorktreeStatus.RUNNING}
)


class Worktree(Base, UUIDMixin, TimestampMixin):
    """A git worktree managed by the pool."""

    __tablename__ = "worktrees"
    __table_args__ = (
        # NULL slots never collide, so only live worktrees compete for an index
        UniqueConstraint("project_id", "slot", name="uq_worktrees_project_slot"),
    )

    project_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    branch_name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(1000), nullable=False)

    status: Mapped[WorktreeStatus] = mapped_column(
        enum_column(WorktreeStatus, 20),
        default=WorktreeStatus.CREATING,
        nullable=False,
        index=True,
    )
    slot: Mapped[int | None] = mapped_column(Integer)

    # Lock
    locked_by_job_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Reuse and cleanup bookkeeping
    run_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    cleanup_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cleanup_after: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Bumped by every conditional update
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def __repr__(self) -> str:
        return f"<Worktree {self.id} branch={self.branch_name} status={self.status}>"
