"""Worker pool dispatcher - the scheduling loop.

Each tick fills free worker slots from the queue: reserve a worktree when the
job type needs one, claim the lease, and launch the executor as an independent
task. The tick never waits for executors. Everything the dispatcher knows about
in-flight work is a cache; job and worktree rows remain the source of truth.
"""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpatch.config import Settings, get_settings
from flowpatch.errors import (
    CapacityExhausted,
    ClaimConflict,
    ExecutorFailure,
    ExecutorTimeout,
    FailureReason,
    InvalidTransition,
    LeaseLost,
    WorktreeCreationFailure,
)
from flowpatch.logging import get_logger
from flowpatch.models import Job, JobState, Project, Worktree, utcnow
from flowpatch.policy import (
    ProjectPolicy,
    RetryConfig,
    WorkerPoolConfig,
    merge_pool_configs,
    parse_policy,
    project_worker_cap,
)
from flowpatch.services.events import Event, EventBus, EventType
from flowpatch.services.job_queue import JobQueue, PoolState
from flowpatch.services.lease_store import LeaseStore
from flowpatch.services.logs import JobLogHub, LogChannel
from flowpatch.services.reconciler import Reconciler
from flowpatch.services.retry_policy import Retry, decide
from flowpatch.services.tracker_client import create_label_client
from flowpatch.services.worktree_pool import BranchHint, ReleaseOutcome, WorktreePool
from flowpatch.worker.executor import Executor, ResultEnvelope, ResultStatus
from flowpatch.worker.git_worktrees import GitWorktreeManager

logger = get_logger(__name__)

# Delay before a job whose worktree could not be created is tried again
WORKTREE_BACKOFF = timedelta(seconds=60)


class RunPhase(str, Enum):
    CLAIMED = "claimed"
    EXECUTING = "executing"
    REPORTING_SUCCESS = "reporting_success"
    REPORTING_FAILURE = "reporting_failure"
    AWAITING_APPROVAL = "awaiting_approval"


@dataclass
class InFlight:
    """A job this process is currently executing."""

    job_id: UUID
    job_type: str
    project_id: UUID
    worktree_id: UUID | None
    started_at: datetime
    phase: RunPhase = RunPhase.CLAIMED
    task: asyncio.Task[None] | None = None
    run_task: asyncio.Task[ResultEnvelope | None] | None = None
    cancel_requested: bool = False
    lease_lost: bool = False

    def snapshot(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "type": self.job_type,
            "project_id": str(self.project_id),
            "worktree_id": str(self.worktree_id) if self.worktree_id else None,
            "phase": self.phase.value,
            "started_at": self.started_at.isoformat(),
        }


class Dispatcher:
    """Matches queued jobs to worker capacity and supervises their executors."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: Executor,
        *,
        settings: Settings | None = None,
        events: EventBus | None = None,
        log_hub: JobLogHub | None = None,
        reconciler: Reconciler | None = None,
        clock: Callable[[], datetime] = utcnow,
        git_factory: Callable[[Path], GitWorktreeManager] = GitWorktreeManager,
        renew_interval: float | None = None,
    ):
        self.settings = settings or get_settings()
        self.owner_id = self.settings.dispatcher_owner_id
        self.executor = executor
        self.events = events or EventBus()
        self.log_hub = log_hub or JobLogHub(
            self.settings.log_buffer_lines, self.settings.log_retained_jobs
        )
        self.lease_store = LeaseStore(session_factory, clock)
        self.queue = JobQueue(
            session_factory,
            pool_config=self.settings.pool_config(),
            events=self.events,
            clock=clock,
        )
        self.pool = WorktreePool(
            session_factory,
            self.lease_store,
            events=self.events,
            clock=clock,
            git_factory=git_factory,
        )
        self.reconciler = reconciler or Reconciler(
            lambda project: create_label_client(project, self.settings)
        )
        self._session_factory = session_factory
        self._clock = clock
        self._renew_interval = renew_interval or self.settings.job_lease_seconds / 2
        self._in_flight: dict[UUID, InFlight] = {}
        self._base_pool_config = self.settings.pool_config()
        self._pending_pool_config: WorkerPoolConfig | None = None
        self._project_caps: dict[UUID, int] = {}
        self._wake = asyncio.Event()
        self._running = False
        self._stopping = False
        self._subscription: str | None = None

    # ------------------------------------------------------------------ config

    @property
    def pool_config(self) -> WorkerPoolConfig:
        return self.queue.pool_config

    def update_pool_config(self, config: WorkerPoolConfig) -> None:
        """Hot-reload pool sizing; applied at the start of the next tick."""
        self._pending_pool_config = config
        self.wake()

    def _apply_pool_config(self) -> None:
        if self._pending_pool_config is None:
            return
        self._base_pool_config = self._pending_pool_config
        self._pending_pool_config = None
        logger.info(
            "dispatcher.pool_config_updated",
            max_workers=self._base_pool_config.max_workers,
            queue_strategy=self._base_pool_config.queue_strategy.value,
        )

    async def _load_pool_config(self) -> None:
        """Merge project ``worker.pool`` sections into the effective pool config."""
        async with self._session_factory() as session:
            rows = (await session.execute(select(Project.id, Project.policy))).all()
        policies = {project_id: parse_policy(policy) for project_id, policy in rows}
        self._project_caps = {
            project_id: cap
            for project_id, policy in policies.items()
            if (cap := project_worker_cap(policy)) is not None
        }
        merged = merge_pool_configs(self._base_pool_config, policies.values())
        if merged == self.queue.pool_config:
            return
        old = self.queue.pool_config
        self.queue.pool_config = merged
        logger.info(
            "dispatcher.pool_config_applied",
            max_workers=merged.max_workers,
            queue_strategy=merged.queue_strategy.value,
            previous_max_workers=old.max_workers,
        )

    def _saturated_projects(self) -> set[UUID]:
        running: dict[UUID, int] = {}
        for flight in self._in_flight.values():
            running[flight.project_id] = running.get(flight.project_id, 0) + 1
        return {
            project_id
            for project_id, count in running.items()
            if count >= self._project_caps.get(project_id, self.pool_config.max_workers)
        }

    def _max_minutes(self, policy: ProjectPolicy) -> float:
        if "max_minutes" in policy.worker.model_fields_set:
            return policy.worker.max_minutes
        return self.settings.max_execution_minutes

    def _retry_config(self, policy: ProjectPolicy) -> RetryConfig:
        if "cooldown_minutes" in policy.retry.model_fields_set:
            return policy.retry
        return policy.retry.model_copy(
            update={"cooldown_minutes": self.settings.retry_cooldown_minutes}
        )

    async def _load_project(self, project_id: UUID) -> Project | None:
        async with self._session_factory() as session:
            return await session.get(Project, project_id)

    # ------------------------------------------------------------------ loop

    def wake(self) -> None:
        """Run the next tick now instead of waiting for the interval."""
        self._wake.set()

    def _on_event(self, event: Event) -> None:
        self.wake()

    async def run(self) -> None:
        """Tick until shutdown, with a periodic maintenance sweep."""
        loop = asyncio.get_running_loop()
        self._running = True
        self._subscription = self.events.subscribe(
            self._on_event, event_filter=lambda e: e.type == EventType.JOB_ENQUEUED
        )
        logger.info(
            "dispatcher.started",
            owner_id=self.owner_id,
            max_workers=self.pool_config.max_workers,
            tick_seconds=self.settings.dispatcher_tick_seconds,
        )
        next_maintenance = loop.time()
        try:
            while not self._stopping:
                if loop.time() >= next_maintenance:
                    await self.maintenance()
                    next_maintenance = loop.time() + self.settings.cleanup_interval_seconds
                self._wake.clear()
                await self.tick()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._wake.wait(), timeout=self.settings.dispatcher_tick_seconds
                    )
        finally:
            self._running = False
            if self._subscription:
                self.events.unsubscribe(self._subscription)
                self._subscription = None
            logger.info("dispatcher.stopped", owner_id=self.owner_id)

    async def shutdown(self, grace_seconds: float = 30.0) -> None:
        """
        Stop ticking and wait for in-flight executors.

        Executors still running after ``grace_seconds`` are cancelled without
        releasing their leases; like a crash, the leases and worktree locks
        expire and the jobs are reclaimed later.
        """
        self._stopping = True
        self.wake()
        tasks = [flight.task for flight in self._in_flight.values() if flight.task]
        if not tasks:
            return
        logger.info("dispatcher.draining", in_flight=len(tasks), grace_seconds=grace_seconds)
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("dispatcher.abandoned_on_shutdown", count=len(pending))
            await asyncio.wait(pending)

    def status(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "running": self._running and not self._stopping,
            "max_workers": self.pool_config.max_workers,
            "queue_strategy": self.pool_config.queue_strategy.value,
            "executing": [flight.snapshot() for flight in self._in_flight.values()],
        }

    # ------------------------------------------------------------------ tick

    async def tick(self) -> int:
        """One scheduling pass. Returns how many jobs were launched."""
        self._apply_pool_config()
        launched = 0
        try:
            await self._load_pool_config()
            capacity = self.pool_config.max_workers - len(self._in_flight)
            if capacity <= 0:
                return 0
            pool_state = PoolState(
                strategy=self.pool_config.queue_strategy,
                blocked_projects=await self.pool.blocked_projects(),
                saturated_projects=self._saturated_projects(),
                exclude_job_ids=set(self._in_flight),
            )
            while capacity > 0 and not self._stopping:
                job = await self.queue.next_claimable(pool_state)
                if job is None:
                    break
                pool_state.exclude_job_ids.add(job.id)
                if await self._dispatch(job, pool_state):
                    launched += 1
                    capacity -= 1
                    pool_state.saturated_projects = self._saturated_projects()
        except Exception:
            logger.exception("dispatcher.tick_failed", owner_id=self.owner_id)
        return launched

    async def _dispatch(self, job: Job, pool_state: PoolState) -> bool:
        """Reserve resources, claim and launch one job. False when skipped."""
        project = await self._load_project(job.project_id)
        if project is None:
            await self._fail_unrunnable(job, f"Project {job.project_id} not found")
            return False
        policy = parse_policy(project.policy)

        worktree: Worktree | None = None
        newly_locked = False
        if job.type.requires_worktree:
            worktree = await self.pool.find_locked_by(job.id)
            if worktree is not None:
                # Resumed or reclaimed job: keep working in its own worktree
                if not await self.pool.renew_lock(
                    worktree.id, job.id, self.settings.worktree_lock_minutes
                ):
                    # Reclaimed in the meantime; the next tick acquires a fresh one
                    logger.info(
                        "dispatcher.worktree_lock_lost",
                        job_id=str(job.id),
                        worktree_id=str(worktree.id),
                    )
                    return False
            else:
                try:
                    worktree = await self.pool.acquire(
                        job.project_id,
                        BranchHint(
                            id=job.payload.get("issue_number") or job.card_id,
                            title=job.payload.get("title", ""),
                        ),
                    )
                except WorktreeCreationFailure as e:
                    await self.queue.defer(job.id, WORKTREE_BACKOFF)
                    logger.warning(
                        "dispatcher.worktree_creation_failed",
                        job_id=str(job.id),
                        project_id=str(job.project_id),
                        error=str(e),
                    )
                    return False
                if worktree is None:
                    pool_state.blocked_projects.add(job.project_id)
                    logger.debug(
                        "dispatcher.project_blocked",
                        job_id=str(job.id),
                        project_id=str(job.project_id),
                    )
                    return False
                if not await self.pool.lock(
                    worktree.id, job.id, self.settings.worktree_lock_minutes
                ):
                    logger.debug(
                        "dispatcher.worktree_lock_lost", job_id=str(job.id), worktree_id=str(worktree.id)
                    )
                    return False
                newly_locked = True

        claim = await self.lease_store.claim(job.id, self.owner_id, self.settings.job_lease_seconds)
        if not claim.granted:
            # Another dispatcher won the job; retried next tick if still claimable
            if worktree is not None and newly_locked:
                await self.pool.unlock(worktree.id, job.id)
            logger.debug("dispatcher.claim_conflict", job_id=str(job.id))
            return False

        flight = InFlight(
            job_id=job.id,
            job_type=job.type.value,
            project_id=job.project_id,
            worktree_id=worktree.id if worktree else None,
            started_at=self._clock(),
        )
        self._in_flight[job.id] = flight
        flight.task = asyncio.create_task(
            self._supervise(job, project, policy, worktree, flight), name=f"job-{job.id}"
        )
        logger.info(
            "dispatcher.job_claimed",
            job_id=str(job.id),
            type=job.type.value,
            project_id=str(job.project_id),
            attempt=job.attempt_count,
            worktree_id=str(worktree.id) if worktree else None,
        )
        self.events.emit(
            EventType.JOB_CLAIMED,
            job_id=str(job.id),
            type=job.type.value,
            project_id=str(job.project_id),
            owner_id=self.owner_id,
        )
        return True

    async def _fail_unrunnable(self, job: Job, message: str) -> None:
        claim = await self.lease_store.claim(job.id, self.owner_id, self.settings.job_lease_seconds)
        if not claim.granted:
            return
        await self.lease_store.release(
            job.id,
            self.owner_id,
            JobState.FAILED,
            result={"status": "failure", "error": message},
            error=message,
        )
        logger.error("dispatcher.job_unrunnable", job_id=str(job.id), error=message)
        self.events.emit(EventType.JOB_FAILED, job_id=str(job.id), error=message)

    # ------------------------------------------------------------------ supervision

    async def _supervise(
        self,
        job: Job,
        project: Project,
        policy: ProjectPolicy,
        worktree: Worktree | None,
        flight: InFlight,
    ) -> None:
        try:
            await self._execute_and_report(job, project, policy, worktree, flight)
        except asyncio.CancelledError:
            logger.warning("dispatcher.supervision_cancelled", job_id=str(job.id))
            raise
        except Exception:
            # Lease is no longer renewed; the job is reclaimed once it expires
            logger.exception("dispatcher.supervision_failed", job_id=str(job.id))
        finally:
            self._in_flight.pop(job.id, None)
            self.wake()

    async def _consume(
        self, job: Job, worktree: Worktree | None, channel: LogChannel
    ) -> ResultEnvelope | None:
        """Drain the executor stream into the log channel; return its envelope."""
        envelope: ResultEnvelope | None = None
        path = Path(worktree.path) if worktree else None
        async with contextlib.aclosing(self.executor.run(job.type, job.payload, path)) as stream:
            async for event in stream:
                if isinstance(event, ResultEnvelope):
                    envelope = event
                else:
                    channel.append(event)
        return envelope

    async def _renew_loop(self, job: Job, worktree: Worktree | None, flight: InFlight) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                renewed = await self.lease_store.renew(
                    job.id, self.owner_id, self.settings.job_lease_seconds
                )
                if renewed and worktree is not None:
                    await self.pool.renew_lock(
                        worktree.id, job.id, self.settings.worktree_lock_minutes
                    )
            except Exception:
                # Transient store failure; the lease is still valid until it expires
                logger.exception("dispatcher.renew_failed", job_id=str(job.id))
                continue
            if not renewed and not flight.cancel_requested:
                flight.lease_lost = True
                if flight.run_task is not None:
                    flight.run_task.cancel()
                raise LeaseLost(job.id)

    async def _execute_and_report(
        self,
        job: Job,
        project: Project,
        policy: ProjectPolicy,
        worktree: Worktree | None,
        flight: InFlight,
    ) -> None:
        channel = self.log_hub.open(job.id)
        max_minutes = self._max_minutes(policy)
        run_task = asyncio.create_task(self._consume(job, worktree, channel))
        flight.run_task = run_task
        if flight.cancel_requested:
            # cancel() arrived before the executor started
            run_task.cancel()
        flight.phase = RunPhase.EXECUTING
        renewer = asyncio.create_task(self._renew_loop(job, worktree, flight))

        envelope: ResultEnvelope | None = None
        failure: ExecutorFailure | None = None
        try:
            async with asyncio.timeout(max_minutes * 60):
                envelope = await run_task
        except TimeoutError:
            failure = ExecutorTimeout(max_minutes)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            # The executor was stopped by cancel() or a lost lease
        except ExecutorFailure as e:
            failure = e
        except Exception as e:
            logger.exception("dispatcher.executor_crashed", job_id=str(job.id))
            failure = ExecutorFailure(str(e) or type(e).__name__)
        finally:
            renewer.cancel()
            if not run_task.done():
                run_task.cancel()
            await asyncio.wait([run_task, renewer])
            self.log_hub.finish(channel)

        lost = None if renewer.cancelled() else renewer.exception()
        if flight.cancel_requested:
            if worktree is not None:
                await self.pool.release(
                    worktree.id, job.id, ReleaseOutcome.CANCELED, policy.worker.rollback_on_cancel
                )
            logger.info("dispatcher.job_canceled", job_id=str(job.id))
        elif flight.lease_lost:
            logger.warning(
                "dispatcher.lease_lost", job_id=str(job.id), owner_id=self.owner_id, error=str(lost)
            )
            await self._handle_lease_lost(job, worktree)
        elif failure is not None:
            await self._report_failure(job, policy, worktree, failure)
        elif envelope is None:
            await self._report_failure(
                job,
                policy,
                worktree,
                ExecutorFailure("Executor finished without a result", FailureReason.NO_RESULT),
            )
        elif envelope.status == ResultStatus.SUCCESS:
            flight.phase = RunPhase.REPORTING_SUCCESS
            await self._report_success(job, project, worktree, envelope)
        elif envelope.status == ResultStatus.PENDING_APPROVAL:
            flight.phase = RunPhase.AWAITING_APPROVAL
            await self._await_approval(job, worktree, envelope)
        else:
            flight.phase = RunPhase.REPORTING_FAILURE
            await self._report_failure(
                job,
                policy,
                worktree,
                ExecutorFailure(
                    envelope.error or "Executor reported failure",
                    envelope.reason or FailureReason.EXECUTOR_FAILURE,
                ),
                result=envelope.to_result(),
            )

    async def _handle_lease_lost(self, job: Job, worktree: Worktree | None) -> None:
        """Discard the result; give the worktree up unless the new owner is using it."""
        logger.warning("dispatcher.result_discarded", job_id=str(job.id))
        if worktree is None:
            return
        lease = await self.lease_store.get_lease(job.id)
        if lease is not None and lease.owner_id != self.owner_id:
            return
        await self.pool.release(worktree.id, job.id, ReleaseOutcome.ABANDONED)

    async def _report_success(
        self,
        job: Job,
        project: Project,
        worktree: Worktree | None,
        envelope: ResultEnvelope,
    ) -> None:
        result = envelope.to_result()
        if not await self.lease_store.release(
            job.id, self.owner_id, JobState.SUCCEEDED, result=result
        ):
            # Canceled or reclaimed elsewhere in the meantime
            await self._handle_lease_lost(job, worktree)
            return

        if worktree is not None:
            await self.pool.release(worktree.id, job.id, ReleaseOutcome.SUCCESS)
        logger.info("dispatcher.job_succeeded", job_id=str(job.id), type=job.type.value)
        self.events.emit(
            EventType.JOB_SUCCEEDED,
            job_id=str(job.id),
            type=job.type.value,
            project_id=str(job.project_id),
        )

        report = await self.reconciler.reconcile(job, project, result)
        if report.diagnostics:
            logger.warning(
                "dispatcher.reconcile_diagnostics",
                job_id=str(job.id),
                diagnostics=report.diagnostics,
            )

    async def _report_failure(
        self,
        job: Job,
        policy: ProjectPolicy,
        worktree: Worktree | None,
        failure: ExecutorFailure,
        result: dict[str, Any] | None = None,
    ) -> None:
        error = str(failure)
        result = result or {"status": "failure", "error": error}
        result.setdefault("reason", failure.reason.value)
        decision = decide(job, self._retry_config(policy), failure.reason)

        if isinstance(decision, Retry):
            not_before = decision.not_before(self._clock())
            released = await self.lease_store.requeue(
                job.id, self.owner_id, not_before, error=error, result=result
            )
            if released:
                logger.info(
                    "dispatcher.retry_scheduled",
                    job_id=str(job.id),
                    attempt=job.attempt_count + 1,
                    not_before=not_before.isoformat(),
                    reason=failure.reason.value,
                )
                self.events.emit(
                    EventType.JOB_RETRY_SCHEDULED,
                    job_id=str(job.id),
                    attempt=job.attempt_count + 1,
                    not_before=not_before.isoformat(),
                    error=error,
                )
        else:
            released = await self.lease_store.release(
                job.id,
                self.owner_id,
                JobState.FAILED,
                result={**result, "gave_up": decision.reason},
                error=error,
            )
            if released:
                logger.warning(
                    "dispatcher.job_failed",
                    job_id=str(job.id),
                    reason=failure.reason.value,
                    error=error,
                )
                self.events.emit(
                    EventType.JOB_FAILED,
                    job_id=str(job.id),
                    reason=failure.reason.value,
                    error=error,
                )

        if not released:
            await self._handle_lease_lost(job, worktree)
            return
        if worktree is not None:
            outcome = (
                ReleaseOutcome.ABANDONED
                if isinstance(failure, ExecutorTimeout)
                else ReleaseOutcome.FAILURE
            )
            await self.pool.release(worktree.id, job.id, outcome)

    async def _await_approval(
        self, job: Job, worktree: Worktree | None, envelope: ResultEnvelope
    ) -> None:
        if not await self.lease_store.release(
            job.id, self.owner_id, JobState.PENDING_APPROVAL, result=envelope.to_result()
        ):
            await self._handle_lease_lost(job, worktree)
            return
        if worktree is not None:
            # Stays locked for the approval window, then is force-reclaimed
            await self.pool.renew_lock(worktree.id, job.id, self.settings.worktree_lock_minutes)
        logger.info("dispatcher.awaiting_approval", job_id=str(job.id))
        self.events.emit(
            EventType.JOB_PENDING_APPROVAL,
            job_id=str(job.id),
            project_id=str(job.project_id),
            summary=envelope.summary,
        )

    # ------------------------------------------------------------------ user actions

    async def cancel(self, job_id: UUID, reason: str = "Canceled by user") -> None:
        """
        Cancel a job wherever it is.

        Raises:
            LookupError: job does not exist
            InvalidTransition: job already finished
        """
        job = await self.queue.get(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        if job.state.is_terminal:
            raise InvalidTransition(f"Cannot cancel job in state {job.state.value}")

        flight = self._in_flight.get(job_id)
        remote_lease = None
        if flight is not None:
            flight.cancel_requested = True
        elif job.state == JobState.RUNNING:
            lease = await self.lease_store.get_lease(job_id)
            if lease is not None and lease.owner_id != self.owner_id:
                remote_lease = lease
        if not await self.lease_store.force_cancel(job_id, reason):
            if flight is not None:
                flight.cancel_requested = False
            raise InvalidTransition(f"Job {job_id} finished before it could be canceled")

        if flight is not None and flight.run_task is not None and not flight.run_task.done():
            flight.run_task.cancel()
        elif flight is None:
            # Not executing here: pending approval, or running in another process
            worktree = await self.pool.find_locked_by(job_id)
            if worktree is not None and remote_lease is not None:
                # The owner's executor keeps writing until its next renewal fails
                logger.info(
                    "dispatcher.remote_cancel",
                    job_id=str(job_id),
                    lease_owner_id=remote_lease.owner_id,
                    worktree_id=str(worktree.id),
                )
                await self.pool.release(worktree.id, job_id, ReleaseOutcome.ABANDONED)
            elif worktree is not None:
                project = await self._load_project(job.project_id)
                policy = parse_policy(project.policy if project else None)
                await self.pool.release(
                    worktree.id, job_id, ReleaseOutcome.CANCELED, policy.worker.rollback_on_cancel
                )

        logger.info("dispatcher.cancel_requested", job_id=str(job_id), state=job.state.value)
        self.events.emit(EventType.JOB_CANCELED, job_id=str(job_id), reason=reason)

    async def resume(self, job_id: UUID) -> None:
        """
        Resume a ``pending_approval`` job in its locked worktree.

        Raises:
            LookupError: job does not exist
            InvalidTransition: job is not awaiting approval
            CapacityExhausted: no worker slot or worktree is free
            ClaimConflict: another dispatcher claimed the job first
        """
        job = await self.queue.get(job_id)
        if job is None:
            raise LookupError(f"Job {job_id} not found")
        if job.state != JobState.PENDING_APPROVAL:
            raise InvalidTransition(f"Cannot resume job in state {job.state.value}")
        if len(self._in_flight) >= self.pool_config.max_workers:
            raise CapacityExhausted("No worker slot available")
        if job.project_id in self._saturated_projects():
            raise CapacityExhausted(f"Project {job.project_id} has no worker slot available")

        approved = await self.queue.mark_approved(job_id)
        if approved is None:
            raise InvalidTransition(f"Job {job_id} is no longer awaiting approval")

        pool_state = PoolState(strategy=self.pool_config.queue_strategy)
        if not await self._dispatch(approved, pool_state):
            if job.project_id in pool_state.blocked_projects:
                raise CapacityExhausted(f"No worktree available for project {job.project_id}")
            raise ClaimConflict(job_id)
        logger.info("dispatcher.job_resumed", job_id=str(job_id))

    # ------------------------------------------------------------------ maintenance

    async def maintenance(self) -> dict[str, int]:
        """Reclaim expired locks, expire stale approvals, schedule and sweep cleanups."""
        stats: dict[str, int] = {}
        try:
            stats["reclaimed"] = await self.pool.reclaim_expired_locks()
            stats["approvals_expired"] = await self._expire_stale_approvals()
            stats["idle_scheduled"] = await self.pool.schedule_idle_cleanups()
            stats["cleaned"] = await self.pool.sweep_cleanups()
        except Exception:
            logger.exception("dispatcher.maintenance_failed")
        if any(stats.values()):
            logger.info("dispatcher.maintenance", **stats)
        return stats

    async def _expire_stale_approvals(self) -> int:
        cutoff = self._clock() - timedelta(minutes=self.settings.worktree_lock_minutes)
        expired = 0
        for job_id in await self.queue.stale_approvals(cutoff):
            if await self.lease_store.expire_approval(job_id, FailureReason.APPROVAL_TIMEOUT):
                expired += 1
                self.events.emit(
                    EventType.JOB_FAILED,
                    job_id=str(job_id),
                    reason=FailureReason.APPROVAL_TIMEOUT.value,
                )
        return expired
