"""Job queue API routes."""

import json
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Response
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from flowpatch.api.deps import DbSession, DispatcherDep, LogHubDep
from flowpatch.models import JobState, JobType, Project
from flowpatch.schemas import EnqueueResponse, Job as JobSchema, JobCreate, JobQueueStats, PaginatedResponse

router = APIRouter()


@router.get("/", response_model=PaginatedResponse[JobSchema])
async def list_jobs(
    dispatcher: DispatcherDep,
    project_id: UUID | None = None,
    type: JobType | None = None,
    state: JobState | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> PaginatedResponse[JobSchema]:
    """List jobs, newest first, with optional filtering."""
    jobs, total = await dispatcher.queue.list_jobs(
        project_id=project_id,
        job_type=type,
        state=state,
        offset=(page - 1) * page_size,
        limit=page_size,
    )
    items = [JobSchema.model_validate(job) for job in jobs]
    return PaginatedResponse.create(items, total, page, page_size)


@router.get("/stats", response_model=JobQueueStats)
async def get_job_stats(dispatcher: DispatcherDep, project_id: UUID | None = None) -> JobQueueStats:
    """Job counts by state and type."""
    return JobQueueStats(**await dispatcher.queue.stats(project_id))


@router.post("/", response_model=EnqueueResponse, status_code=201)
async def enqueue_job(
    db: DbSession,
    dispatcher: DispatcherDep,
    body: JobCreate,
    response: Response,
) -> EnqueueResponse:
    """
    Enqueue a job.

    Duplicate-aware: if an equivalent job (same type, project and card) is
    already queued or running, its id is returned with status 200.
    """
    if await db.get(Project, body.project_id) is None:
        raise HTTPException(status_code=404, detail="Project not found")

    try:
        result = await dispatcher.queue.enqueue(
            body.project_id,
            body.type,
            card_id=body.card_id,
            payload=body.payload,
            priority=body.priority,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e

    if not result.created:
        response.status_code = 200
    return EnqueueResponse(job_id=result.job_id, created=result.created)


@router.get("/{job_id}", response_model=JobSchema)
async def get_job(dispatcher: DispatcherDep, job_id: UUID) -> JobSchema:
    """Get job details."""
    job = await dispatcher.queue.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobSchema.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobSchema)
async def cancel_job(dispatcher: DispatcherDep, job_id: UUID) -> JobSchema:
    """Cancel a queued, running or pending-approval job."""
    await dispatcher.cancel(job_id)
    job = await dispatcher.queue.get(job_id)
    return JobSchema.model_validate(job)


@router.post("/{job_id}/approve", response_model=JobSchema)
async def approve_job(dispatcher: DispatcherDep, job_id: UUID) -> JobSchema:
    """Resume a job that is waiting for human approval."""
    await dispatcher.resume(job_id)
    job = await dispatcher.queue.get(job_id)
    return JobSchema.model_validate(job)


@router.post("/{job_id}/retry", response_model=JobSchema)
async def retry_job(dispatcher: DispatcherDep, job_id: UUID) -> JobSchema:
    """Manually requeue a failed or canceled job as a fresh attempt."""
    job = await dispatcher.queue.retry(job_id)
    return JobSchema.model_validate(job)


@router.get("/{job_id}/logs")
async def stream_job_logs(
    dispatcher: DispatcherDep,
    log_hub: LogHubDep,
    job_id: UUID,
    after_seq: int = Query(0, ge=0, description="Start streaming after this sequence number"),
) -> EventSourceResponse:
    """
    Stream a job's buffered log lines via Server-Sent Events.

    The most recent lines of the job's latest run are replayed, then new lines
    follow until the run ends.

    Events:
    - "log": {seq, text, at}
    - "done": Stream is complete, client should close connection
    """
    if await dispatcher.queue.get(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    async def event_generator():
        channel = log_hub.get(job_id)
        if channel is not None:
            async for line in channel.follow(after_seq):
                yield {
                    "event": "log",
                    "id": str(line.seq),
                    "data": json.dumps(
                        {"seq": line.seq, "text": line.text, "at": line.at.isoformat()}
                    ),
                }
        yield {"event": "done", "data": ""}

    return EventSourceResponse(event_generator())
