"""Job model - durable, lease-based job queue."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from flowpatch.models.base import (
    Base,
    JSONType,
    TimestampMixin,
    UTCDateTime,
    UUIDMixin,
    enum_column,
    utcnow,
)


class JobType(str, Enum):
    """Type of job to be processed."""

    SYNC_POLL = "sync_poll"  # Poll the remote tracker
    SYNC_PUSH = "sync_push"  # Push a local card change to the remote
    WORKER_RUN = "worker_run"  # AI worker against a card
    WEBHOOK_INGEST = "webhook_ingest"  # Process a webhook delivery
    WORKSPACE_ENSURE = "workspace_ensure"
    INDEX_BUILD = "index_build"
    INDEX_REFRESH = "index_refresh"
    INDEX_WATCH_START = "index_watch_start"
    INDEX_WATCH_STOP = "index_watch_stop"
    DOCS_REFRESH = "docs_refresh"
    CONFIG_VALIDATE = "config_validate"
    CONTEXT_PREVIEW = "context_preview"
    REPAIR = "repair"  # Maintenance tasks
    MIGRATE = "migrate"

    @property
    def requires_worktree(self) -> bool:
        """Whether jobs of this type mutate code in an isolated worktree."""
        return self in WORKTREE_JOB_TYPES

    @property
    def reconciles_labels(self) -> bool:
        """Whether success of this type updates remote status labels."""
        return self in (JobType.WORKER_RUN, JobType.SYNC_PUSH)


WORKTREE_JOB_TYPES = frozenset({JobType.WORKER_RUN})


class JobState(str, Enum):
    """Lifecycle state of a job."""

    QUEUED = "queued"  # Awaiting a dispatcher
    RUNNING = "running"  # Leased by a dispatcher
    PENDING_APPROVAL = "pending_approval"  # Paused until a human approves
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED)


ACTIVE_JOB_STATES = (JobState.QUEUED, JobState.RUNNING, JobState.PENDING_APPROVAL)


def make_dedupe_key(job_type: JobType, project_id: UUID, card_id: str | None) -> str:
    """Key shared by equivalent jobs (same type + project + card)."""
    return f"{job_type.value}:{project_id}:{card_id or '-'}"


class Job(Base, UUIDMixin, TimestampMixin):
    """A job in the durable queue."""

    __tablename__ = "jobs"
    __table_args__ = (
        # One active job per dedupe key; completed jobs keep the key but drop out
        Index(
            "uq_jobs_active_dedupe",
            "dedupe_key",
            unique=True,
            sqlite_where=text("state IN ('queued', 'running', 'pending_approval')"),
            postgresql_where=text("state IN ('queued', 'running', 'pending_approval')"),
        ),
        Index("ix_jobs_queue", "state", "priority", "created_at"),
    )

    # Job definition
    type: Mapped[JobType] = mapped_column(enum_column(JobType), nullable=False, index=True)
    project_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    card_id: Mapped[str | None] = mapped_column(String(255))
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(400), nullable=False)

    # Queue management
    state: Mapped[JobState] = mapped_column(
        enum_column(JobState, 20), default=JobState.QUEUED, nullable=False, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, default=999, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    not_before: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    # Lease
    lease_owner_id: Mapped[str | None] = mapped_column(String(255))
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Completion
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    error: Mapped[str | None] = mapped_column(Text)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    # Bumped by every conditional update
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def has_valid_lease(self, now: datetime) -> bool:
        """Check if the job is currently leased by someone."""
        return (
            self.lease_owner_id is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )

    def __repr__(self) -> str:
        return f"<Job {self.id} type={self.type} state={self.state}>"
