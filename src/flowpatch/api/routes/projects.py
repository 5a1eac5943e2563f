"""Project and policy API routes."""

from uuid import UUID

from fastapi import APIRouter, HTTPException
from sqlalchemy import select

from flowpatch.api.deps import DbSession, DispatcherDep
from flowpatch.models import Project
from flowpatch.policy import ProjectPolicy, parse_policy, validate_policy
from flowpatch.schemas import PolicyUpdate, PolicyUpdateResponse, Project as ProjectSchema, ProjectCreate

router = APIRouter()


@router.get("/", response_model=list[ProjectSchema])
async def list_projects(db: DbSession) -> list[ProjectSchema]:
    result = await db.execute(select(Project).order_by(Project.created_at.asc()))
    return [ProjectSchema.model_validate(p) for p in result.scalars().all()]


@router.post("/", response_model=ProjectSchema, status_code=201)
async def create_project(db: DbSession, body: ProjectCreate) -> ProjectSchema:
    validation = validate_policy(body.policy)
    if not validation.valid:
        raise HTTPException(status_code=422, detail=validation.errors)

    project = Project(**body.model_dump())
    db.add(project)
    # Committed before responding so the dispatcher (own sessions) sees it
    await db.commit()
    await db.refresh(project)
    return ProjectSchema.model_validate(project)


@router.get("/{project_id}", response_model=ProjectSchema)
async def get_project(db: DbSession, project_id: UUID) -> ProjectSchema:
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return ProjectSchema.model_validate(project)


@router.get("/{project_id}/policy", response_model=ProjectPolicy)
async def get_effective_policy(db: DbSession, project_id: UUID) -> ProjectPolicy:
    """The stored policy with defaults filled in."""
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return parse_policy(project.policy)


@router.put("/{project_id}/policy", response_model=PolicyUpdateResponse)
async def update_policy(
    db: DbSession,
    dispatcher: DispatcherDep,
    project_id: UUID,
    body: PolicyUpdate,
) -> PolicyUpdateResponse:
    """Replace a project's policy. Takes effect on the next dispatch cycle."""
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    validation = validate_policy(body.policy)
    if not validation.valid:
        raise HTTPException(status_code=422, detail=validation.errors)

    project.policy = body.policy
    await db.commit()
    await db.refresh(project)
    dispatcher.wake()
    return PolicyUpdateResponse(
        project=ProjectSchema.model_validate(project), validation=validation
    )
