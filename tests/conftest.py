"""Shared fixtures: a scratch database, a controllable clock and a real git repo."""

import asyncio
import subprocess
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from flowpatch.config import Settings
from flowpatch.db.session import create_engine, create_session_factory
from flowpatch.models import Base, Project
from flowpatch.services.events import EventBus
from flowpatch.services.lease_store import LeaseStore
from flowpatch.worker.dispatcher import Dispatcher
from flowpatch.worker.mock_executor import MockExecutor


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'flowpatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'flowpatch.db'}",
        dispatcher_owner_id="test-owner",
        dispatcher_tick_seconds=0.05,
        cleanup_interval_seconds=3600,
        job_lease_seconds=60,
        worktree_lock_minutes=10,
        github_token="",
        gitlab_token="",
        executor_mock_scenario="success",
    )


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def lease_store(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> LeaseStore:
    return LeaseStore(session_factory, clock)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository with one commit on ``main``."""
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "-b", "main")
    run_git(repo, "config", "user.email", "dev@example.com")
    run_git(repo, "config", "user.name", "Dev")
    run_git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# scratch\n")
    run_git(repo, "add", "README.md")
    run_git(repo, "commit", "-m", "Initial commit")
    return repo


@pytest.fixture
def make_project(
    session_factory: async_sessionmaker[AsyncSession], git_repo: Path
) -> Callable[..., Awaitable[Project]]:
    async def _make(policy: dict[str, Any] | None = None, **kwargs: Any) -> Project:
        kwargs.setdefault("name", "scratch")
        kwargs.setdefault("local_path", str(git_repo))
        async with session_factory() as session:
            project = Project(policy=policy or {}, **kwargs)
            session.add(project)
            await session.commit()
            return project

    return _make


@pytest.fixture
def make_dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: FakeClock,
    events: EventBus,
) -> Callable[..., Dispatcher]:
    def _make(executor: Any = None, **kwargs: Any) -> Dispatcher:
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("events", events)
        return Dispatcher(session_factory, executor or MockExecutor(message_delay=0), **kwargs)

    return _make


async def wait_until(predicate: Callable[[], Any], timeout: float = 5.0) -> None:
    """Poll ``predicate`` (sync or async) until it is truthy."""
    async with asyncio.timeout(timeout):
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            await asyncio.sleep(0.01)


@pytest.fixture
def drain() -> Callable[[Dispatcher], Awaitable[None]]:
    """Wait until a dispatcher has no job in flight."""

    async def _drain(dispatcher: Dispatcher, timeout: float = 5.0) -> None:
        await wait_until(lambda: not dispatcher.status()["executing"], timeout)

    return _drain


@pytest.fixture
def until() -> Callable[..., Awaitable[None]]:
    return wait_until
