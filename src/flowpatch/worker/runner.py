"""Dispatcher process entry point."""

import asyncio
import signal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowpatch.config import Settings, get_settings
from flowpatch.db.session import get_engine, get_session_factory
from flowpatch.logging import configure_logging, get_logger
from flowpatch.services.events import EventBus
from flowpatch.services.logs import JobLogHub
from flowpatch.worker.dispatcher import Dispatcher
from flowpatch.worker.executor import CommandExecutor, Executor, HandlerExecutor
from flowpatch.worker.handlers import default_handlers
from flowpatch.worker.mock_executor import MockExecutor

logger = get_logger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


def build_executor(settings: Settings) -> Executor:
    """In-process handlers where registered, the agent CLI (or a mock) otherwise."""
    if settings.executor_mock_scenario:
        logger.info("runner.mock_executor", scenario=settings.executor_mock_scenario)
        fallback: Executor = MockExecutor(settings.executor_mock_scenario)
    else:
        fallback = CommandExecutor(settings.agent_command)
    return HandlerExecutor(default_handlers(), fallback=fallback)


def build_dispatcher(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    events: EventBus | None = None,
    log_hub: JobLogHub | None = None,
) -> Dispatcher:
    settings = settings or get_settings()
    return Dispatcher(
        session_factory or get_session_factory(),
        build_executor(settings),
        settings=settings,
        events=events,
        log_hub=log_hub,
    )


async def main() -> None:
    """Run the dispatcher until SIGTERM/SIGINT, then drain in-flight jobs."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    dispatcher = build_dispatcher(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    run_task = asyncio.create_task(dispatcher.run(), name="dispatcher")
    stop_task = asyncio.create_task(stop.wait())
    await asyncio.wait([run_task, stop_task], return_when=asyncio.FIRST_COMPLETED)

    logger.info("runner.shutting_down", owner_id=dispatcher.owner_id)
    await dispatcher.shutdown(SHUTDOWN_GRACE_SECONDS)
    stop_task.cancel()
    await run_task
    await get_engine().dispose()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
