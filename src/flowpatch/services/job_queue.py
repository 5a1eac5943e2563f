"""Durable job queue.

Enqueue is duplicate-aware: at most one queued or running job exists per
(type, project, card), enforced by a partial unique index so concurrent
enqueues from repeated webhook deliveries collapse onto one row.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpatch.errors import InvalidTransition
from flowpatch.logging import get_logger
from flowpatch.models import ACTIVE_JOB_STATES, Job, JobState, JobType, make_dedupe_key, utcnow
from flowpatch.models.job import WORKTREE_JOB_TYPES
from flowpatch.policy import QueueStrategy, WorkerPoolConfig
from flowpatch.schemas.payloads import parse_payload
from flowpatch.services.events import EventBus, EventType
from flowpatch.services.lease_store import lease_is_void
from flowpatch.services.prioritization import calculate_job_priority

logger = get_logger(__name__)

_ENQUEUE_ATTEMPTS = 3


@dataclass(frozen=True)
class EnqueueResult:
    job_id: UUID
    created: bool


@dataclass
class PoolState:
    """What the dispatcher knows at the start of a claim attempt."""

    strategy: QueueStrategy = QueueStrategy.FIFO
    # Projects with no worktree slot available this tick
    blocked_projects: set[UUID] = field(default_factory=set)
    # Projects already running as many jobs as their pool allows
    saturated_projects: set[UUID] = field(default_factory=set)
    # Jobs already tried (and skipped) earlier in this tick
    exclude_job_ids: set[UUID] = field(default_factory=set)


def claimable_criteria(now: datetime):
    """Due queued jobs, plus running jobs whose lease has expired."""
    return or_(
        and_(Job.state == JobState.QUEUED, Job.not_before <= now),
        and_(Job.state == JobState.RUNNING, lease_is_void(now)),
    )


class JobQueue:
    """Enqueues jobs and picks the next one to dispatch."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        pool_config: WorkerPoolConfig | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self.pool_config = pool_config or WorkerPoolConfig()
        self._events = events
        self._clock = clock

    async def _find_active(self, session: AsyncSession, dedupe_key: str) -> UUID | None:
        return await session.scalar(
            select(Job.id).where(
                Job.dedupe_key == dedupe_key,
                Job.state.in_(ACTIVE_JOB_STATES),
            )
        )

    async def enqueue(
        self,
        project_id: UUID,
        job_type: JobType,
        card_id: str | None = None,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
    ) -> EnqueueResult:
        """
        Insert a queued job, or return the existing equivalent one.

        Raises pydantic.ValidationError if the payload does not fit the job type.
        """
        parsed = parse_payload(job_type, payload).model_dump(mode="json")
        if priority is None:
            priority = calculate_job_priority(parsed, self.pool_config.priority_field)
        dedupe_key = make_dedupe_key(job_type, project_id, card_id)

        for _ in range(_ENQUEUE_ATTEMPTS):
            async with self._session_factory() as session:
                existing = await self._find_active(session, dedupe_key)
                if existing is not None:
                    logger.info(
                        "queue.duplicate_enqueue",
                        job_id=str(existing),
                        dedupe_key=dedupe_key,
                    )
                    return EnqueueResult(job_id=existing, created=False)

                now = self._clock()
                job = Job(
                    type=job_type,
                    project_id=project_id,
                    card_id=card_id,
                    payload=parsed,
                    dedupe_key=dedupe_key,
                    state=JobState.QUEUED,
                    priority=priority,
                    attempt_count=1,
                    not_before=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(job)
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost the race to a concurrent enqueue; look the winner up
                    await session.rollback()
                    continue

                logger.info(
                    "queue.enqueued",
                    job_id=str(job.id),
                    type=job_type.value,
                    project_id=str(project_id),
                    priority=priority,
                )
                if self._events:
                    self._events.emit(
                        EventType.JOB_ENQUEUED,
                        job_id=str(job.id),
                        type=job_type.value,
                        project_id=str(project_id),
                    )
                return EnqueueResult(job_id=job.id, created=True)

        async with self._session_factory() as session:
            existing = await self._find_active(session, dedupe_key)
        if existing is None:
            raise RuntimeError(f"Could not enqueue job for {dedupe_key}")
        return EnqueueResult(job_id=existing, created=False)

    async def next_claimable(self, pool_state: PoolState) -> Job | None:
        """The job the dispatcher should try next, or None when nothing is due."""
        now = self._clock()
        stmt = select(Job).where(claimable_criteria(now))

        if pool_state.blocked_projects:
            stmt = stmt.where(
                or_(
                    Job.type.not_in(list(WORKTREE_JOB_TYPES)),
                    Job.project_id.not_in(list(pool_state.blocked_projects)),
                )
            )
        if pool_state.saturated_projects:
            stmt = stmt.where(Job.project_id.not_in(list(pool_state.saturated_projects)))
        if pool_state.exclude_job_ids:
            stmt = stmt.where(Job.id.not_in(list(pool_state.exclude_job_ids)))

        if pool_state.strategy == QueueStrategy.PRIORITY:
            stmt = stmt.order_by(Job.priority.asc(), Job.created_at.asc(), Job.id.asc())
        else:
            stmt = stmt.order_by(Job.created_at.asc(), Job.id.asc())

        async with self._session_factory() as session:
            return await session.scalar(stmt.limit(1))

    async def get(self, job_id: UUID) -> Job | None:
        async with self._session_factory() as session:
            return await session.get(Job, job_id)

    async def list_jobs(
        self,
        *,
        project_id: UUID | None = None,
        job_type: JobType | None = None,
        state: JobState | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Job], int]:
        """Jobs newest first, with the total count for pagination."""
        stmt = select(Job)
        if project_id is not None:
            stmt = stmt.where(Job.project_id == project_id)
        if job_type is not None:
            stmt = stmt.where(Job.type == job_type)
        if state is not None:
            stmt = stmt.where(Job.state == state)

        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(stmt.subquery()))
            rows = await session.scalars(
                stmt.order_by(Job.created_at.desc()).offset(offset).limit(limit)
            )
            return list(rows.all()), total or 0

    async def stats(self, project_id: UUID | None = None) -> dict[str, Any]:
        """Counts by state and by type."""
        by_state = select(Job.state, func.count()).group_by(Job.state)
        by_type = select(Job.type, func.count()).group_by(Job.type)
        if project_id is not None:
            by_state = by_state.where(Job.project_id == project_id)
            by_type = by_type.where(Job.project_id == project_id)

        async with self._session_factory() as session:
            state_counts = {s.value: c for s, c in (await session.execute(by_state)).all()}
            type_counts = {t.value: c for t, c in (await session.execute(by_type)).all()}

        return {
            "by_state": {s.value: state_counts.get(s.value, 0) for s in JobState},
            "by_type": type_counts,
            "total": sum(state_counts.values()),
        }

    async def defer(self, job_id: UUID, delay: timedelta) -> bool:
        """Push a queued job's earliest claim time out by ``delay``."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.QUEUED)
                .values(not_before=now + delay, updated_at=now, version=Job.version + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        deferred = result.rowcount > 0
        if deferred:
            logger.info("queue.deferred", job_id=str(job_id), delay_seconds=delay.total_seconds())
        return deferred

    async def mark_approved(self, job_id: UUID) -> Job | None:
        """Flag a ``pending_approval`` job's payload as approved for its resumed run."""
        now = self._clock()
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None or job.state != JobState.PENDING_APPROVAL:
                return None
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.state == JobState.PENDING_APPROVAL,
                    Job.version == job.version,
                )
                .values(
                    payload={**job.payload, "approved": True},
                    updated_at=now,
                    version=Job.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 0:
            return None
        return await self.get(job_id)

    async def stale_approvals(self, older_than: datetime) -> list[UUID]:
        """``pending_approval`` jobs without a worktree lock, untouched since ``older_than``."""
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(Job.id).where(
                    Job.state == JobState.PENDING_APPROVAL,
                    Job.type.not_in(list(WORKTREE_JOB_TYPES)),
                    Job.updated_at <= older_than,
                )
            )
            return list(rows.all())

    async def retry(self, job_id: UUID) -> Job:
        """
        Manually requeue a failed or canceled job as a fresh attempt.

        Raises:
            LookupError: job does not exist
            InvalidTransition: job is not failed/canceled, or an equivalent job is active
        """
        now = self._clock()
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise LookupError(f"Job {job_id} not found")
            if job.state not in (JobState.FAILED, JobState.CANCELED):
                raise InvalidTransition(f"Cannot retry job in state {job.state.value}")

            try:
                result = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.version == job.version)
                    .values(
                        state=JobState.QUEUED,
                        attempt_count=1,
                        not_before=now,
                        result=None,
                        error=None,
                        finished_at=None,
                        updated_at=now,
                        version=Job.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise InvalidTransition(
                    f"An equivalent job is already queued or running for {job.dedupe_key}"
                ) from e
            if result.rowcount == 0:
                raise InvalidTransition(f"Job {job_id} changed concurrently")

        logger.info("queue.manual_retry", job_id=str(job_id))
        if self._events:
            self._events.emit(EventType.JOB_ENQUEUED, job_id=str(job_id), type=job.type.value)
        refreshed = await self.get(job_id)
        assert refreshed is not None
        return refreshed
