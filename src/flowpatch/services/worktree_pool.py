"""Worktree pool - bounded, reusable git worktrees per project.

The concurrency ceiling is enforced with numbered slots: a live worktree
(creating, ready or running) holds one slot index in ``[0, max_concurrent)``
and the ``(project_id, slot)`` unique constraint makes allocation atomic across
processes. Within a process a per-project lock serializes the check and the
insert so concurrent acquires do not thrash on constraint violations.
"""

import asyncio
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpatch.errors import FailureReason, WorktreeCreationFailure, WorktreeError
from flowpatch.logging import get_logger
from flowpatch.models import (
    SLOT_HOLDING_STATUSES,
    Job,
    JobState,
    Project,
    Worktree,
    WorktreeStatus,
    utcnow,
)
from flowpatch.policy import ProjectPolicy, parse_policy
from flowpatch.services.events import EventBus, EventType
from flowpatch.services.lease_store import LeaseStore
from flowpatch.worker.git_worktrees import GitWorktreeManager, generate_branch_name

logger = get_logger(__name__)

DEFAULT_LOCK_MINUTES = 10


class ReleaseOutcome(str, Enum):
    """How the job that held a worktree ended."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELED = "canceled"
    ABANDONED = "abandoned"  # Lease lost or timed out; contents are suspect


@dataclass(frozen=True)
class BranchHint:
    """What the branch of a newly created worktree is named after."""

    id: str | int | None = None
    title: str = ""


def _vacate(**values: Any) -> dict[str, Any]:
    """Column values for leaving the slot-holding statuses."""
    return {"slot": None, "locked_by_job_id": None, "lock_expires_at": None, **values}


class WorktreePool:
    """Allocates, locks, recycles and cleans up worktrees."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_store: LeaseStore,
        *,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        git_factory: Callable[[Path], GitWorktreeManager] = GitWorktreeManager,
    ):
        self._session_factory = session_factory
        self._lease_store = lease_store
        self._events = events
        self._clock = clock
        self._git_factory = git_factory
        # Entries vanish once no acquire holds or waits on them
        self._project_locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------ helpers

    def _project_lock(self, project_id: UUID) -> asyncio.Lock:
        lock = self._project_locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._project_locks[project_id] = lock
        return lock

    async def _load_project(self, project_id: UUID) -> tuple[Project, ProjectPolicy]:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
        if project is None:
            raise LookupError(f"Project {project_id} not found")
        return project, parse_policy(project.policy)

    def _git(self, project: Project) -> GitWorktreeManager:
        return self._git_factory(Path(project.local_path))

    async def _cas(self, worktree_id: UUID, *criteria: Any, **values: Any) -> bool:
        """Conditional single-row update; True when the row matched."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Worktree)
                .where(Worktree.id == worktree_id, *criteria)
                .values(updated_at=now, version=Worktree.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    def _emit(self, event_type: EventType, worktree: Worktree, **data: Any) -> None:
        if self._events:
            self._events.emit(
                event_type,
                worktree_id=str(worktree.id),
                project_id=str(worktree.project_id),
                **data,
            )

    async def get(self, worktree_id: UUID) -> Worktree | None:
        async with self._session_factory() as session:
            return await session.get(Worktree, worktree_id)

    async def list_worktrees(
        self, project_id: UUID | None = None, include_cleaned: bool = False
    ) -> list[Worktree]:
        stmt = select(Worktree).order_by(Worktree.created_at.asc())
        if project_id is not None:
            stmt = stmt.where(Worktree.project_id == project_id)
        if not include_cleaned:
            stmt = stmt.where(Worktree.status != WorktreeStatus.CLEANED)
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def find_locked_by(self, job_id: UUID) -> Worktree | None:
        """The running worktree held by a job, if any."""
        async with self._session_factory() as session:
            return await session.scalar(
                select(Worktree).where(
                    Worktree.locked_by_job_id == job_id,
                    Worktree.status == WorktreeStatus.RUNNING,
                )
            )

    # ------------------------------------------------------------------ acquire

    async def acquire(self, project_id: UUID, hint: BranchHint | None = None) -> Worktree | None:
        """
        An idle ready worktree, a freshly created one, or None at the ceiling.

        Raises:
            WorktreeCreationFailure: git could not materialize a new worktree;
                the row is marked ``error`` and its slot freed.
        """
        project, policy = await self._load_project(project_id)
        config = policy.worker.worktree
        now = self._clock()

        async with self._project_lock(project_id):
            async with self._session_factory() as session:
                idle = await session.scalar(
                    select(Worktree)
                    .where(
                        Worktree.project_id == project_id,
                        Worktree.status == WorktreeStatus.READY,
                        or_(
                            Worktree.locked_by_job_id.is_(None),
                            Worktree.lock_expires_at <= now,
                        ),
                    )
                    .order_by(Worktree.updated_at.asc())
                    .limit(1)
                )
                if idle is not None:
                    return idle

                live = await session.scalar(
                    select(func.count())
                    .select_from(Worktree)
                    .where(
                        Worktree.project_id == project_id,
                        Worktree.status.in_(list(SLOT_HOLDING_STATUSES)),
                    )
                )
            if (live or 0) >= config.max_concurrent:
                logger.debug(
                    "pool.at_capacity",
                    project_id=str(project_id),
                    live=live,
                    max_concurrent=config.max_concurrent,
                )
                return None

            worktree = await self._allocate_slot(project, policy, hint)
            if worktree is None:
                return None

        return await self._materialize(project, policy, worktree)

    async def _allocate_slot(
        self,
        project: Project,
        policy: ProjectPolicy,
        hint: BranchHint | None,
    ) -> Worktree | None:
        config = policy.worker.worktree
        git = self._git(project)
        worktree_id = uuid4()
        short_id = worktree_id.hex[:8]
        hint = hint or BranchHint()
        branch_name = generate_branch_name(
            config.branch_pattern, config.branch_prefix, hint.id or short_id, hint.title
        )

        async with self._session_factory() as session:
            taken = await session.scalar(
                select(func.count())
                .select_from(Worktree)
                .where(
                    Worktree.project_id == project.id,
                    Worktree.branch_name == branch_name,
                    Worktree.status != WorktreeStatus.CLEANED,
                )
            )
        if taken:
            branch_name = generate_branch_name(
                config.branch_pattern,
                config.branch_prefix,
                f"{hint.id}-{short_id}" if hint.id else short_id,
                hint.title,
            )

        path = git.compute_path(branch_name, config)
        base_branch = config.base_branch or project.default_branch

        for slot in range(config.max_concurrent):
            now = self._clock()
            async with self._session_factory() as session:
                worktree = Worktree(
                    id=worktree_id,
                    project_id=project.id,
                    branch_name=branch_name,
                    base_ref=base_branch,
                    path=str(path),
                    status=WorktreeStatus.CREATING,
                    slot=slot,
                    created_at=now,
                    updated_at=now,
                )
                session.add(worktree)
                try:
                    await session.commit()
                except IntegrityError:
                    # Slot held by another process; try the next index
                    await session.rollback()
                    continue
            logger.info(
                "pool.slot_allocated",
                project_id=str(project.id),
                worktree_id=str(worktree_id),
                slot=slot,
                branch=branch_name,
            )
            return worktree

        logger.info("pool.no_free_slot", project_id=str(project.id))
        return None

    async def _materialize(
        self, project: Project, policy: ProjectPolicy, worktree: Worktree
    ) -> Worktree:
        git = self._git(project)
        try:
            result = await git.ensure_worktree(
                Path(worktree.path),
                worktree.branch_name,
                worktree.base_ref,
                policy.worker.worktree,
            )
        except WorktreeError as e:
            await self._cas(
                worktree.id,
                Worktree.status == WorktreeStatus.CREATING,
                **_vacate(status=WorktreeStatus.ERROR, last_error=str(e)),
            )
            logger.error(
                "pool.worktree_creation_failed",
                worktree_id=str(worktree.id),
                project_id=str(project.id),
                error=str(e),
            )
            raise WorktreeCreationFailure(str(e)) from e

        await self._cas(
            worktree.id,
            Worktree.status == WorktreeStatus.CREATING,
            status=WorktreeStatus.READY,
            base_ref=result.base_ref,
        )
        created = await self.get(worktree.id)
        assert created is not None
        self._emit(EventType.WORKTREE_CREATED, created, branch=created.branch_name)
        return created

    # ------------------------------------------------------------------ locking

    async def lock(
        self, worktree_id: UUID, job_id: UUID, ttl_minutes: float = DEFAULT_LOCK_MINUTES
    ) -> bool:
        """``ready -> running`` for one job; only valid on an unlocked ready worktree."""
        now = self._clock()
        locked = await self._cas(
            worktree_id,
            Worktree.status == WorktreeStatus.READY,
            or_(Worktree.locked_by_job_id.is_(None), Worktree.lock_expires_at <= now),
            status=WorktreeStatus.RUNNING,
            locked_by_job_id=job_id,
            lock_expires_at=now + timedelta(minutes=ttl_minutes),
            run_count=Worktree.run_count + 1,
            cleanup_after=None,
            cleanup_requested_at=None,
        )
        if locked:
            logger.info("pool.locked", worktree_id=str(worktree_id), job_id=str(job_id))
            if self._events:
                self._events.emit(
                    EventType.WORKTREE_LOCKED, worktree_id=str(worktree_id), job_id=str(job_id)
                )
        return locked

    async def renew_lock(
        self, worktree_id: UUID, job_id: UUID, ttl_minutes: float = DEFAULT_LOCK_MINUTES
    ) -> bool:
        return await self._cas(
            worktree_id,
            Worktree.status == WorktreeStatus.RUNNING,
            Worktree.locked_by_job_id == job_id,
            lock_expires_at=self._clock() + timedelta(minutes=ttl_minutes),
        )

    async def unlock(self, worktree_id: UUID, job_id: UUID) -> bool:
        """Undo a lock whose job was never started (its claim was denied)."""
        return await self._cas(
            worktree_id,
            Worktree.status == WorktreeStatus.RUNNING,
            Worktree.locked_by_job_id == job_id,
            status=WorktreeStatus.READY,
            locked_by_job_id=None,
            lock_expires_at=None,
            run_count=Worktree.run_count - 1,
        )

    # ------------------------------------------------------------------ release

    async def release(
        self,
        worktree_id: UUID,
        job_id: UUID,
        outcome: ReleaseOutcome,
        rollback_on_cancel: bool = False,
    ) -> WorktreeStatus | None:
        """
        Hand a worktree back after its job ended.

        Success and failure reset the branch to its base and return it to
        ``ready``, unless the reuse cap is reached. A cancel with rollback
        discards uncommitted work and returns to ``ready``; a cancel without
        rollback keeps the files and schedules cleanup after the configured
        delay. Abandoned worktrees are always scheduled for cleanup.

        Returns the new status, or None if the job no longer held the lock.
        """
        worktree = await self.get(worktree_id)
        if worktree is None or worktree.locked_by_job_id != job_id:
            logger.warning(
                "pool.release_not_held", worktree_id=str(worktree_id), job_id=str(job_id)
            )
            return None

        project, policy = await self._load_project(worktree.project_id)
        config = policy.worker.worktree
        now = self._clock()
        held = (Worktree.status == WorktreeStatus.RUNNING, Worktree.locked_by_job_id == job_id)

        reuse_exhausted = config.max_reuse_runs > 0 and worktree.run_count >= config.max_reuse_runs
        preserve = outcome == ReleaseOutcome.ABANDONED or (
            outcome == ReleaseOutcome.CANCELED and not rollback_on_cancel
        )

        if preserve or reuse_exhausted:
            delay = 0 if reuse_exhausted and not preserve else config.cleanup_delay_minutes
            new_status = WorktreeStatus.CLEANUP_PENDING
            values = _vacate(
                status=new_status,
                cleanup_requested_at=now,
                cleanup_after=now + timedelta(minutes=delay),
            )
        else:
            git = self._git(project)
            try:
                if outcome == ReleaseOutcome.CANCELED:
                    await git.discard_changes(Path(worktree.path))
                else:
                    await git.reset_to_base(Path(worktree.path), worktree.base_ref)
            except WorktreeError as e:
                new_status = WorktreeStatus.ERROR
                values = _vacate(status=new_status, last_error=str(e))
            else:
                new_status = WorktreeStatus.READY
                values = {"status": new_status, "locked_by_job_id": None, "lock_expires_at": None}

        if not await self._cas(worktree_id, *held, **values):
            logger.warning(
                "pool.release_lost_lock", worktree_id=str(worktree_id), job_id=str(job_id)
            )
            return None

        logger.info(
            "pool.released",
            worktree_id=str(worktree_id),
            job_id=str(job_id),
            outcome=outcome.value,
            status=new_status.value,
            run_count=worktree.run_count,
        )
        self._emit(
            EventType.WORKTREE_RELEASED, worktree, outcome=outcome.value, status=new_status.value
        )
        return new_status

    # ------------------------------------------------------------------ cleanup

    async def schedule_cleanup(self, worktree_id: UUID, delay_minutes: float) -> bool:
        """``ready | error -> cleanup_pending``, removable after ``delay_minutes``."""
        now = self._clock()
        scheduled = await self._cas(
            worktree_id,
            Worktree.status.in_([WorktreeStatus.READY, WorktreeStatus.ERROR]),
            or_(Worktree.locked_by_job_id.is_(None), Worktree.lock_expires_at <= now),
            **_vacate(
                status=WorktreeStatus.CLEANUP_PENDING,
                cleanup_requested_at=now,
                cleanup_after=now + timedelta(minutes=delay_minutes),
            ),
        )
        if scheduled:
            logger.info(
                "pool.cleanup_scheduled", worktree_id=str(worktree_id), delay_minutes=delay_minutes
            )
        return scheduled

    async def schedule_idle_cleanups(self) -> int:
        """Schedule ready worktrees idle longer than their project's cleanup delay."""
        async with self._session_factory() as session:
            idle = list(
                (
                    await session.scalars(
                        select(Worktree).where(
                            Worktree.status == WorktreeStatus.READY,
                            Worktree.locked_by_job_id.is_(None),
                        )
                    )
                ).all()
            )

        now = self._clock()
        policies: dict[UUID, ProjectPolicy] = {}
        scheduled = 0
        for worktree in idle:
            if worktree.project_id not in policies:
                try:
                    _, policies[worktree.project_id] = await self._load_project(worktree.project_id)
                except LookupError:
                    policies[worktree.project_id] = ProjectPolicy()
            delay = policies[worktree.project_id].worker.worktree.cleanup_delay_minutes
            if worktree.updated_at <= now - timedelta(minutes=delay):
                if await self.schedule_cleanup(worktree.id, 0):
                    scheduled += 1
        return scheduled

    async def sweep_cleanups(self) -> int:
        """Remove due ``cleanup_pending`` worktrees. Returns how many were cleaned."""
        now = self._clock()
        async with self._session_factory() as session:
            due = list(
                (
                    await session.scalars(
                        select(Worktree).where(
                            Worktree.status == WorktreeStatus.CLEANUP_PENDING,
                            or_(Worktree.cleanup_after.is_(None), Worktree.cleanup_after <= now),
                        )
                    )
                ).all()
            )

        cleaned = 0
        for worktree in due:
            # Claim the row so a concurrent sweeper skips it
            if not await self._cas(
                worktree.id,
                Worktree.status == WorktreeStatus.CLEANUP_PENDING,
                Worktree.version == worktree.version,
                cleanup_after=now + timedelta(minutes=DEFAULT_LOCK_MINUTES),
            ):
                continue
            if await self._remove(worktree):
                cleaned += 1
        return cleaned

    async def _remove(self, worktree: Worktree) -> bool:
        try:
            project, policy = await self._load_project(worktree.project_id)
            git = self._git(project)
            await git.remove_worktree(Path(worktree.path), policy.worker.worktree)
            _, on_remote = await git.branch_exists(worktree.branch_name)
            if not on_remote:
                # Never pushed: nothing else refers to the branch
                await git.delete_branch(worktree.branch_name)
        except (WorktreeError, LookupError, OSError) as e:
            await self._cas(
                worktree.id,
                Worktree.status == WorktreeStatus.CLEANUP_PENDING,
                **_vacate(status=WorktreeStatus.ERROR, last_error=f"Cleanup failed: {e}"),
            )
            logger.error("pool.cleanup_failed", worktree_id=str(worktree.id), error=str(e))
            return False

        await self._cas(
            worktree.id,
            Worktree.status == WorktreeStatus.CLEANUP_PENDING,
            **_vacate(status=WorktreeStatus.CLEANED),
        )
        logger.info("pool.cleaned", worktree_id=str(worktree.id), path=worktree.path)
        self._emit(EventType.WORKTREE_CLEANED, worktree, path=worktree.path)
        return True

    async def reclaim_expired_locks(self) -> int:
        """
        Force-reclaim running worktrees whose lock expired.

        Skipped while the owning job still runs under a valid lease (its
        dispatcher will renew). A job left in ``pending_approval`` past the lock
        window is failed with an approval timeout. Reclaimed worktrees keep
        their files and go to ``cleanup_pending``.
        """
        now = self._clock()
        async with self._session_factory() as session:
            expired = list(
                (
                    await session.scalars(
                        select(Worktree).where(
                            Worktree.status == WorktreeStatus.RUNNING,
                            Worktree.lock_expires_at <= now,
                        )
                    )
                ).all()
            )

        reclaimed = 0
        for worktree in expired:
            job: Job | None = None
            if worktree.locked_by_job_id is not None:
                async with self._session_factory() as session:
                    job = await session.get(Job, worktree.locked_by_job_id)
            if job is not None and job.state == JobState.RUNNING and job.has_valid_lease(now):
                continue

            if job is not None and job.state == JobState.PENDING_APPROVAL:
                if await self._lease_store.expire_approval(job.id, FailureReason.APPROVAL_TIMEOUT):
                    if self._events:
                        self._events.emit(
                            EventType.JOB_FAILED,
                            job_id=str(job.id),
                            reason=FailureReason.APPROVAL_TIMEOUT.value,
                        )

            try:
                _, policy = await self._load_project(worktree.project_id)
                delay = policy.worker.worktree.cleanup_delay_minutes
            except LookupError:
                delay = 0
            if await self._cas(
                worktree.id,
                Worktree.status == WorktreeStatus.RUNNING,
                Worktree.lock_expires_at <= now,
                **_vacate(
                    status=WorktreeStatus.CLEANUP_PENDING,
                    cleanup_requested_at=now,
                    cleanup_after=now + timedelta(minutes=delay),
                ),
            ):
                reclaimed += 1
                logger.warning(
                    "pool.lock_reclaimed",
                    worktree_id=str(worktree.id),
                    job_id=str(worktree.locked_by_job_id),
                )
                self._emit(
                    EventType.WORKTREE_RELEASED,
                    worktree,
                    outcome=ReleaseOutcome.ABANDONED.value,
                    status=WorktreeStatus.CLEANUP_PENDING.value,
                )
        return reclaimed

    # ------------------------------------------------------------------ capacity

    async def blocked_projects(self) -> set[UUID]:
        """Projects where a worktree job could not get a worktree right now."""
        now = self._clock()
        async with self._session_factory() as session:
            live_counts = dict(
                (
                    await session.execute(
                        select(Worktree.project_id, func.count())
                        .where(Worktree.status.in_(list(SLOT_HOLDING_STATUSES)))
                        .group_by(Worktree.project_id)
                    )
                ).all()
            )
            with_idle = set(
                (
                    await session.scalars(
                        select(Worktree.project_id)
                        .where(
                            Worktree.status == WorktreeStatus.READY,
                            or_(
                                Worktree.locked_by_job_id.is_(None),
                                Worktree.lock_expires_at <= now,
                            ),
                        )
                        .distinct()
                    )
                ).all()
            )

        blocked: set[UUID] = set()
        for project_id, live in live_counts.items():
            if project_id in with_idle:
                continue
            try:
                _, policy = await self._load_project(project_id)
            except LookupError:
                continue
            if live >= policy.worker.worktree.max_concurrent:
                blocked.add(project_id)
        return blocked
