"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flowpatch.api.router import api_router
from flowpatch.config import get_settings
from flowpatch.db.session import get_engine
from flowpatch.errors import CapacityExhausted, ClaimConflict, InvalidTransition
from flowpatch.logging import configure_logging, get_logger
from flowpatch.schemas import ErrorResponse
from flowpatch.worker.runner import build_dispatcher

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    configure_logging(settings.log_level, settings.log_format)
    dispatcher = build_dispatcher(settings)
    app.state.dispatcher = dispatcher
    loop_task: asyncio.Task[None] | None = None
    if settings.embedded_dispatcher:
        loop_task = asyncio.create_task(dispatcher.run(), name="dispatcher")
    logger.info("api.started", embedded_dispatcher=settings.embedded_dispatcher)
    yield
    # Shutdown
    await dispatcher.shutdown()
    if loop_task is not None:
        await loop_task
    await get_engine().dispose()


app = FastAPI(
    title="flowpatch",
    description="Job scheduling and git worktree orchestration for AI workers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    body = ErrorResponse(error=type(exc).__name__, detail=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(ClaimConflict)
async def claim_conflict_handler(request: Request, exc: ClaimConflict) -> JSONResponse:
    return _error(409, exc)


@app.exception_handler(CapacityExhausted)
async def capacity_exhausted_handler(request: Request, exc: CapacityExhausted) -> JSONResponse:
    return _error(409, exc)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
    return _error(400, exc)


@app.exception_handler(LookupError)
async def not_found_handler(request: Request, exc: LookupError) -> JSONResponse:
    return _error(404, exc)


# Include API router
app.include_router(api_router, prefix="/api")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "healthy"}
