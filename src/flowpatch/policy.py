"""Per-project policy.

A project's policy is stored as raw JSON on the project row and parsed on every
use, so edits take effect on the next dispatch cycle without a restart.
"""

from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from flowpatch.logging import get_logger
from flowpatch.models.job import JobType

logger = get_logger(__name__)

MIN_POOL_WORKERS = 1
MAX_POOL_WORKERS = 8
DEFAULT_RETRY_COOLDOWN_MINUTES = 30
DEFAULT_MAX_MINUTES = 25


class QueueStrategy(str, Enum):
    """Order in which claimable jobs are dispatched."""

    FIFO = "fifo"
    PRIORITY = "priority"


class WorktreeRoot(str, Enum):
    """Where worktree directories are placed relative to the repository."""

    REPO = "repo"  # <repo>/.flowpatch-worktrees
    SIBLING = "sibling"  # <repo>/../<repo-name>-worktrees
    CUSTOM = "custom"  # custom_path


class CardStatus(str, Enum):
    """Kanban column a card sits in."""

    DRAFT = "draft"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    TESTING = "testing"
    DONE = "done"

    @classmethod
    def parse(cls, value: str) -> "CardStatus":
        """Accept both 'in_progress' and 'in-progress' spellings."""
        return cls(value.strip().lower().replace("-", "_").replace(" ", "_"))


class WorkerPoolConfig(BaseModel):
    """Worker pool sizing and queue ordering."""

    max_workers: int = 1
    queue_strategy: QueueStrategy = QueueStrategy.FIFO
    priority_field: str | None = None

    @field_validator("max_workers")
    @classmethod
    def clamp_max_workers(cls, v: int) -> int:
        return max(MIN_POOL_WORKERS, min(MAX_POOL_WORKERS, v))


class WorktreeConfig(BaseModel):
    """Worktree placement, naming and recycling."""

    root: WorktreeRoot = WorktreeRoot.REPO
    custom_path: str | None = None
    base_branch: str | None = None  # None = project default branch
    branch_prefix: str = "flowpatch/"
    branch_pattern: str = "{prefix}{id}-{slug}"
    max_concurrent: int = Field(default=1, ge=1)
    cleanup_delay_minutes: int = Field(default=30, ge=0)
    max_reuse_runs: int = Field(default=0, ge=0)  # 0 = unlimited


class WorkerPolicy(BaseModel):
    max_minutes: float = DEFAULT_MAX_MINUTES
    rollback_on_cancel: bool = False
    pool: WorkerPoolConfig = Field(default_factory=WorkerPoolConfig)
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)


def _default_max_retries() -> dict[JobType, int]:
    return {
        JobType.WORKER_RUN: 3,
        JobType.SYNC_PUSH: 3,
        JobType.SYNC_POLL: 2,
        JobType.WEBHOOK_INGEST: 2,
    }


class RetryConfig(BaseModel):
    """Automatic retry settings. Unlisted job types get a single attempt."""

    cooldown_minutes: float = Field(default=DEFAULT_RETRY_COOLDOWN_MINUTES, ge=0)
    max_retries: dict[JobType, int] = Field(default_factory=_default_max_retries)

    def max_attempts(self, job_type: JobType) -> int:
        return self.max_retries.get(job_type, 1)


class StatusLabels(BaseModel):
    """Remote label for each card status."""

    draft: str = "status::draft"
    ready: str = "status::ready"
    in_progress: str = "status::in-progress"
    in_review: str = "status::in-review"
    testing: str = "status::testing"
    done: str = "status::done"

    def label_for(self, status: CardStatus) -> str:
        return getattr(self, status.value)

    def all_labels(self) -> list[str]:
        return [self.label_for(status) for status in CardStatus]


class SyncPolicy(BaseModel):
    status_labels: StatusLabels = Field(default_factory=StatusLabels)
    create_missing_labels: bool = True
    label_color: str = "ededed"


class ProjectPolicy(BaseModel):
    """Complete per-project policy with defaults for every section."""

    version: int = 1
    worker: WorkerPolicy = Field(default_factory=WorkerPolicy)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sync: SyncPolicy = Field(default_factory=SyncPolicy)


class PolicyValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def parse_policy(data: dict[str, Any] | None) -> ProjectPolicy:
    """Parse stored policy JSON, falling back to defaults when it is invalid."""
    if not data:
        return ProjectPolicy()
    try:
        return ProjectPolicy.model_validate(data)
    except ValidationError as e:
        logger.warning("policy.invalid", errors=e.error_count(), detail=str(e))
        return ProjectPolicy()


def merge_pool_configs(
    base: WorkerPoolConfig, policies: Iterable[ProjectPolicy]
) -> WorkerPoolConfig:
    """
    Combine the process-wide pool config with per-project ``worker.pool`` sections.

    Only fields a project sets explicitly count. The pool grows to the largest
    ``max_workers`` any project asks for, switches to priority ordering when any
    project wants it, and takes the first explicit ``priority_field``.
    """
    merged = base.model_copy()
    for policy in policies:
        pool = policy.worker.pool
        if "max_workers" in pool.model_fields_set:
            merged.max_workers = max(merged.max_workers, pool.max_workers)
        if (
            "queue_strategy" in pool.model_fields_set
            and pool.queue_strategy == QueueStrategy.PRIORITY
        ):
            merged.queue_strategy = QueueStrategy.PRIORITY
        if merged.priority_field is None and pool.priority_field:
            merged.priority_field = pool.priority_field
    return merged


def project_worker_cap(policy: ProjectPolicy) -> int | None:
    """Per-project in-flight ceiling, when the project sets one."""
    pool = policy.worker.pool
    if "max_workers" in pool.model_fields_set:
        return pool.max_workers
    return None


def validate_policy(data: dict[str, Any]) -> PolicyValidation:
    """Validate raw policy JSON, collecting errors and advisory warnings."""
    errors: list[str] = []
    warnings: list[str] = []

    parsed: ProjectPolicy | None = None
    try:
        parsed = ProjectPolicy.model_validate(data)
    except ValidationError as e:
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            errors.append(f"{location}: {err['msg']}")

    if "version" in data and not isinstance(data["version"], int):
        errors.append("version must be a number")

    worker = data.get("worker") or {}
    max_minutes = worker.get("max_minutes")
    if isinstance(max_minutes, int | float):
        if max_minutes <= 0:
            errors.append("worker.max_minutes must be a positive number")
        elif max_minutes > 120:
            warnings.append("worker.max_minutes > 120 may cause long-running jobs")

    max_workers = (worker.get("pool") or {}).get("max_workers")
    if isinstance(max_workers, int):
        if max_workers <= 0:
            errors.append("worker.pool.max_workers must be a positive number")
        elif max_workers > MAX_POOL_WORKERS:
            warnings.append(
                f"worker.pool.max_workers > {MAX_POOL_WORKERS} may cause resource contention"
            )

    worktree = worker.get("worktree") or {}
    if worktree.get("root") == WorktreeRoot.CUSTOM.value and not worktree.get("custom_path"):
        errors.append("worker.worktree.custom_path is required when root is 'custom'")

    if parsed is not None:
        label_values = [label for label in parsed.sync.status_labels.all_labels() if label]
        if len(label_values) != len(set(label_values)):
            warnings.append("Duplicate status labels detected - this may cause confusion")

    return PolicyValidation(valid=not errors, errors=errors, warnings=warnings)
