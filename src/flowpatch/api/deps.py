"""API dependency injection."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from flowpatch.db.session import get_db
from flowpatch.services.logs import JobLogHub
from flowpatch.worker.dispatcher import Dispatcher

# Type alias for database session dependency
DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_dispatcher(request: Request) -> Dispatcher:
    """The dispatcher created by the application lifespan."""
    return request.app.state.dispatcher


def get_log_hub(request: Request) -> JobLogHub:
    return request.app.state.dispatcher.log_hub


DispatcherDep = Annotated[Dispatcher, Depends(get_dispatcher)]
LogHubDep = Annotated[JobLogHub, Depends(get_log_hub)]
