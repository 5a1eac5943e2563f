"""Tests for the dispatcher, end to end against SQLite, real git and a mock executor."""

import asyncio
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

import pytest

from flowpatch.errors import InvalidTransition
from flowpatch.models import JobState, JobType, WorktreeStatus
from flowpatch.policy import WorkerPoolConfig
from flowpatch.services.events import EventType
from flowpatch.worker.dispatcher import WORKTREE_BACKOFF
from flowpatch.worker.executor import HandlerExecutor
from flowpatch.worker.handlers import default_handlers
from flowpatch.worker.mock_executor import MockExecutor


async def _executing(until, dispatcher) -> None:
    await until(
        lambda: any(f["phase"] == "executing" for f in dispatcher.status()["executing"])
    )


class TestDispatchSuccess:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_worker_run_succeeds_in_worktree(self, make_dispatcher, make_project, drain) -> None:
        executor = MockExecutor(message_delay=0)
        dispatcher = make_dispatcher(executor)
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(
            project.id, JobType.WORKER_RUN, card_id="c1", payload={"title": "Fix login", "issue_number": 42}
        )

        assert await dispatcher.tick() == 1
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.SUCCEEDED
        assert job.result["status"] == "success"
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.READY
        assert worktree.locked_by_job_id is None
        assert worktree.branch_name == "flowpatch/42-fix-login"
        assert executor.runs[0][2] == Path(worktree.path)
        assert any("Let me analyze" in line for line in dispatcher.log_hub.lines(job.id))

    @pytest.mark.asyncio
    async def test_handler_job_runs_without_worktree(
        self, make_dispatcher, make_project, drain, events
    ) -> None:
        dispatcher = make_dispatcher(HandlerExecutor(default_handlers()))
        sub = events.subscribe(lambda e: None)
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(
            project.id, JobType.SYNC_PUSH, card_id="c1", payload={"issue_number": 3, "status": "done"}
        )

        await dispatcher.tick()
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.SUCCEEDED
        assert job.result["artifacts"]["card_status"] == "done"
        assert await dispatcher.pool.list_worktrees(project.id) == []
        types = [e.type for e in events.history(sub)]
        assert types == [EventType.JOB_ENQUEUED, EventType.JOB_CLAIMED, EventType.JOB_SUCCEEDED]

    @pytest.mark.asyncio
    async def test_unknown_project_fails_job(self, make_dispatcher, drain) -> None:
        dispatcher = make_dispatcher()
        enqueued = await dispatcher.queue.enqueue(uuid4(), JobType.SYNC_POLL)

        assert await dispatcher.tick() == 0

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.FAILED
        assert "not found" in job.error

    @pytest.mark.asyncio
    async def test_finished_logs_are_bounded(
        self, make_dispatcher, make_project, drain, settings
    ) -> None:
        dispatcher = make_dispatcher(
            MockExecutor(message_delay=0),
            settings=settings.model_copy(update={"log_retained_jobs": 2}),
        )
        project = await make_project()
        job_ids = []
        for card in "abcde":
            enqueued = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL, card_id=card)
            job_ids.append(enqueued.job_id)
            await dispatcher.tick()
            await drain(dispatcher)

        assert len(dispatcher.log_hub) == 2
        assert dispatcher.log_hub.get(job_ids[0]) is None
        assert dispatcher.log_hub.lines(job_ids[-1])


class TestCapacity:
    """Tests for worker and worktree limits."""

    @pytest.mark.asyncio
    async def test_max_workers_bounds_concurrency(
        self, make_dispatcher, make_project, drain
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor(message_delay=0.02))
        project = await make_project({"worker": {"worktree": {"max_concurrent": 2}}})
        first = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN, card_id="a")
        second = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN, card_id="b")

        assert await dispatcher.tick() == 1
        assert await dispatcher.tick() == 0
        assert len(dispatcher.status()["executing"]) == 1
        await drain(dispatcher)
        assert await dispatcher.tick() == 1
        await drain(dispatcher)

        for enqueued in (first, second):
            assert (await dispatcher.queue.get(enqueued.job_id)).state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_pool_config_hot_reload(self, make_dispatcher, make_project) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang"))
        project = await make_project()
        for card in ("a", "b", "c"):
            await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL, card_id=card)

        dispatcher.update_pool_config(WorkerPoolConfig(max_workers=2))
        assert dispatcher.pool_config.max_workers == 1

        assert await dispatcher.tick() == 2
        assert dispatcher.status()["max_workers"] == 2
        await dispatcher.shutdown(grace_seconds=0)

    @pytest.mark.asyncio
    async def test_project_pool_policy_sizes_the_pool(
        self, make_dispatcher, make_project
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang"))
        project = await make_project({"worker": {"pool": {"max_workers": 3}}})
        for card in ("a", "b", "c"):
            await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL, card_id=card)

        assert await dispatcher.tick() == 3
        assert dispatcher.status()["max_workers"] == 3
        await dispatcher.shutdown(grace_seconds=0)

    @pytest.mark.asyncio
    async def test_project_pool_policy_caps_its_own_jobs(
        self, make_dispatcher, make_project
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang"))
        wide = await make_project({"worker": {"pool": {"max_workers": 3}}}, name="wide")
        narrow = await make_project({"worker": {"pool": {"max_workers": 1}}}, name="narrow")
        for card in ("a", "b"):
            await dispatcher.queue.enqueue(narrow.id, JobType.SYNC_POLL, card_id=card)
        await dispatcher.queue.enqueue(wide.id, JobType.SYNC_POLL)

        assert await dispatcher.tick() == 2

        running = [flight["project_id"] for flight in dispatcher.status()["executing"]]
        assert sorted(running) == sorted([str(narrow.id), str(wide.id)])
        await dispatcher.shutdown(grace_seconds=0)

    @pytest.mark.asyncio
    async def test_blocked_project_does_not_starve_other_jobs(
        self, make_dispatcher, make_project, drain
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang"))
        dispatcher.update_pool_config(WorkerPoolConfig(max_workers=3))
        project = await make_project()
        await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN, card_id="a")
        blocked = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN, card_id="b")
        poll = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL)

        assert await dispatcher.tick() == 2

        assert (await dispatcher.queue.get(blocked.job_id)).state == JobState.QUEUED
        assert (await dispatcher.queue.get(poll.job_id)).state == JobState.RUNNING
        await dispatcher.shutdown(grace_seconds=0)

    @pytest.mark.asyncio
    async def test_worktree_creation_failure_defers_job(
        self, make_dispatcher, make_project, tmp_path, clock
    ) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        dispatcher = make_dispatcher()
        project = await make_project(local_path=str(plain))
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)

        assert await dispatcher.tick() == 0

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.QUEUED
        assert job.not_before == clock() + WORKTREE_BACKOFF
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.ERROR


class TestFailureAndRetry:
    """Tests for failed runs."""

    @pytest.mark.asyncio
    async def test_failure_requeues_after_cooldown(
        self, make_dispatcher, make_project, drain, clock
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("failure", message_delay=0))
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)

        await dispatcher.tick()
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.QUEUED
        assert job.attempt_count == 2
        assert job.not_before == clock() + timedelta(minutes=30)
        assert job.result["reason"] == "executor_failure"
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.READY

        clock.advance(minutes=29)
        assert await dispatcher.tick() == 0
        clock.advance(minutes=1)
        assert await dispatcher.tick() == 1
        await drain(dispatcher)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(
        self, make_dispatcher, make_project, drain, events
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("crash", message_delay=0))
        sub = events.subscribe(lambda e: None, event_filter=lambda e: e.type == EventType.JOB_FAILED)
        project = await make_project({"retry": {"max_retries": {"worker_run": 1}}})
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)

        await dispatcher.tick()
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.FAILED
        assert "crashed" in job.error
        assert "attempt 1 of 1" in job.result["gave_up"]
        assert len(events.history(sub)) == 1

    @pytest.mark.asyncio
    async def test_timeout_abandons_worktree(self, make_dispatcher, make_project, drain) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang", message_delay=0))
        project = await make_project({"worker": {"max_minutes": 0.002}})
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)

        await dispatcher.tick()
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.QUEUED
        assert job.result["reason"] == "timeout"
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.CLEANUP_PENDING

    @pytest.mark.asyncio
    async def test_lease_loss_discards_result(
        self, make_dispatcher, make_project, drain, until, clock
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang", message_delay=0), renew_interval=0.02)
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)
        await dispatcher.tick()
        await _executing(until, dispatcher)

        clock.advance(seconds=61)
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        # Untouched: still running under an expired lease, so claimable again
        assert job.state == JobState.RUNNING
        assert job.result is None
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.CLEANUP_PENDING

    @pytest.mark.asyncio
    async def test_reclaims_job_of_dead_owner(
        self, make_dispatcher, make_project, drain, lease_store, clock
    ) -> None:
        executor = MockExecutor(message_delay=0)
        dispatcher = make_dispatcher(executor)
        # Spare capacity, so the project is not blocked by the held worktree
        project = await make_project({"worker": {"worktree": {"max_concurrent": 2}}})
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)
        worktree = await dispatcher.pool.acquire(project.id)
        await dispatcher.pool.lock(worktree.id, enqueued.job_id)
        await lease_store.claim(enqueued.job_id, "dead-owner", ttl_seconds=10)

        assert await dispatcher.tick() == 0
        clock.advance(seconds=10)
        assert await dispatcher.tick() == 1
        await drain(dispatcher)

        assert (await dispatcher.queue.get(enqueued.job_id)).state == JobState.SUCCEEDED
        assert executor.runs[0][2] == Path(worktree.path)

    @pytest.mark.asyncio
    async def test_reclaimed_worktree_is_not_reused_by_its_job(
        self, make_dispatcher, make_project, drain, lease_store, clock, monkeypatch
    ) -> None:
        executor = MockExecutor(message_delay=0)
        dispatcher = make_dispatcher(executor)
        project = await make_project({"worker": {"worktree": {"max_concurrent": 2}}})
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)
        worktree = await dispatcher.pool.acquire(project.id)
        await dispatcher.pool.lock(worktree.id, enqueued.job_id)
        await lease_store.claim(enqueued.job_id, "dead-owner", ttl_seconds=10)
        clock.advance(seconds=10)

        find_locked_by = dispatcher.pool.find_locked_by
        reclaims = []

        async def find_then_reclaim(job_id):
            # Maintenance reclaims the lock right after the lookup
            found = await find_locked_by(job_id)
            if found is not None and not reclaims:
                clock.advance(minutes=10)
                reclaims.append(await dispatcher.pool.reclaim_expired_locks())
            return found

        monkeypatch.setattr(dispatcher.pool, "find_locked_by", find_then_reclaim)

        assert await dispatcher.tick() == 0
        assert reclaims == [1]
        assert (await dispatcher.queue.get(enqueued.job_id)).state == JobState.RUNNING
        assert await dispatcher.tick() == 1
        await drain(dispatcher)

        assert (await dispatcher.queue.get(enqueued.job_id)).state == JobState.SUCCEEDED
        assert executor.runs[0][2] != Path(worktree.path)
        assert (await dispatcher.pool.get(worktree.id)).status == WorktreeStatus.CLEANUP_PENDING


class TestApproval:
    """Tests for pending approval and resume."""

    @pytest.mark.asyncio
    async def test_resume_continues_in_same_worktree(
        self, make_dispatcher, make_project, drain
    ) -> None:
        executor = MockExecutor("pending_approval", message_delay=0)
        dispatcher = make_dispatcher(executor)
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)

        await dispatcher.tick()
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.PENDING_APPROVAL
        assert job.result["artifacts"]["questions"]
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.RUNNING
        assert worktree.locked_by_job_id == job.id

        await dispatcher.resume(job.id)
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.SUCCEEDED
        assert executor.runs[1][1]["approved"] is True
        assert executor.runs[0][2] == executor.runs[1][2]

    @pytest.mark.asyncio
    async def test_paused_job_absorbs_duplicate_enqueue(
        self, make_dispatcher, make_project, drain
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("pending_approval", message_delay=0))
        project = await make_project()
        first = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL)
        await dispatcher.tick()
        await drain(dispatcher)
        assert (await dispatcher.queue.get(first.job_id)).state == JobState.PENDING_APPROVAL

        again = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL)
        await dispatcher.resume(first.job_id)
        await drain(dispatcher)

        assert again.created is False
        assert again.job_id == first.job_id
        job = await dispatcher.queue.get(first.job_id)
        assert job.state == JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_resume_requires_pending_approval(self, make_dispatcher, make_project) -> None:
        dispatcher = make_dispatcher()
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)

        with pytest.raises(InvalidTransition):
            await dispatcher.resume(enqueued.job_id)
        with pytest.raises(LookupError):
            await dispatcher.resume(uuid4())

    @pytest.mark.asyncio
    async def test_stale_approval_without_worktree_expires(
        self, make_dispatcher, make_project, drain, clock
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("pending_approval", message_delay=0))
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL)
        await dispatcher.tick()
        await drain(dispatcher)
        assert (await dispatcher.queue.get(enqueued.job_id)).state == JobState.PENDING_APPROVAL

        clock.advance(minutes=11)
        stats = await dispatcher.maintenance()

        assert stats["approvals_expired"] == 1
        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.FAILED
        assert job.result["reason"] == "approval_timeout"


class TestCancel:
    """Tests for canceling jobs."""

    @pytest.mark.asyncio
    async def test_cancel_running_job(
        self, make_dispatcher, make_project, drain, until, events
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang", message_delay=0))
        sub = events.subscribe(lambda e: None, event_filter=lambda e: e.type == EventType.JOB_CANCELED)
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)
        await dispatcher.tick()
        await _executing(until, dispatcher)

        await dispatcher.cancel(enqueued.job_id)
        await drain(dispatcher)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.CANCELED
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.CLEANUP_PENDING
        assert len(events.history(sub)) == 1

    @pytest.mark.asyncio
    async def test_cancel_immediately_after_claim(self, make_dispatcher, make_project, drain) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang", message_delay=0))
        project = await make_project({"worker": {"rollback_on_cancel": True}})
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)

        await dispatcher.tick()
        await dispatcher.cancel(enqueued.job_id)
        await drain(dispatcher)

        assert (await dispatcher.queue.get(enqueued.job_id)).state == JobState.CANCELED
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.READY

    @pytest.mark.asyncio
    async def test_cancel_pending_approval_releases_worktree(
        self, make_dispatcher, make_project, drain
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("pending_approval", message_delay=0))
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.WORKER_RUN)
        await dispatcher.tick()
        await drain(dispatcher)

        await dispatcher.cancel(enqueued.job_id)

        assert (await dispatcher.queue.get(enqueued.job_id)).state == JobState.CANCELED
        [worktree] = await dispatcher.pool.list_worktrees(project.id)
        assert worktree.status == WorktreeStatus.CLEANUP_PENDING

    @pytest.mark.asyncio
    async def test_cancel_from_another_dispatcher_does_not_recycle_worktree(
        self, make_dispatcher, make_project, drain, until, settings
    ) -> None:
        owner = make_dispatcher(MockExecutor("hang", message_delay=0), renew_interval=0.05)
        other = make_dispatcher(
            MockExecutor(message_delay=0),
            settings=settings.model_copy(update={"dispatcher_owner_id": "other-owner"}),
        )
        project = await make_project(
            {"worker": {"rollback_on_cancel": True, "worktree": {"max_concurrent": 2}}}
        )
        enqueued = await owner.queue.enqueue(project.id, JobType.WORKER_RUN, card_id="a")
        await owner.tick()
        await _executing(until, owner)
        [busy] = await owner.pool.list_worktrees(project.id)

        await other.cancel(enqueued.job_id)
        await other.queue.enqueue(project.id, JobType.WORKER_RUN, card_id="b")
        assert await other.tick() == 1
        [flight] = other.status()["executing"]

        assert flight["worktree_id"] != str(busy.id)
        assert (await other.pool.get(busy.id)).status == WorktreeStatus.CLEANUP_PENDING
        await drain(owner)
        await drain(other)
        assert (await owner.queue.get(enqueued.job_id)).state == JobState.CANCELED
        assert (await owner.pool.get(busy.id)).status == WorktreeStatus.CLEANUP_PENDING

    @pytest.mark.asyncio
    async def test_cancel_finished_job_is_invalid(
        self, make_dispatcher, make_project, drain
    ) -> None:
        dispatcher = make_dispatcher()
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL)
        await dispatcher.tick()
        await drain(dispatcher)

        with pytest.raises(InvalidTransition):
            await dispatcher.cancel(enqueued.job_id)


class TestRunLoop:
    """Tests for the long-running loop."""

    @pytest.mark.asyncio
    async def test_enqueue_wakes_loop_and_shutdown_stops_it(
        self, make_dispatcher, make_project, until
    ) -> None:
        dispatcher = make_dispatcher()
        project = await make_project()
        loop_task = asyncio.create_task(dispatcher.run())
        await until(lambda: dispatcher.status()["running"])

        enqueued = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL)

        async def succeeded():
            return (await dispatcher.queue.get(enqueued.job_id)).state == JobState.SUCCEEDED

        await until(succeeded)
        await dispatcher.shutdown(grace_seconds=1)
        await asyncio.wait_for(loop_task, timeout=2)
        assert not dispatcher.status()["running"]

    @pytest.mark.asyncio
    async def test_shutdown_leaves_unfinished_job_to_expire(
        self, make_dispatcher, make_project, until
    ) -> None:
        dispatcher = make_dispatcher(MockExecutor("hang", message_delay=0))
        project = await make_project()
        enqueued = await dispatcher.queue.enqueue(project.id, JobType.SYNC_POLL)
        await dispatcher.tick()
        await _executing(until, dispatcher)

        await dispatcher.shutdown(grace_seconds=0.05)

        job = await dispatcher.queue.get(enqueued.job_id)
        assert job.state == JobState.RUNNING
        assert job.lease_owner_id == "test-owner"
        assert dispatcher.status()["executing"] == []
