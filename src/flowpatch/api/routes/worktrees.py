"""Worktree pool API routes."""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query

from flowpatch.api.deps import DispatcherDep
from flowpatch.schemas import Worktree as WorktreeSchema

router = APIRouter()


@router.get("/", response_model=list[WorktreeSchema])
async def list_worktrees(
    dispatcher: DispatcherDep,
    project_id: UUID | None = None,
    include_cleaned: bool = False,
) -> list[WorktreeSchema]:
    worktrees = await dispatcher.pool.list_worktrees(project_id, include_cleaned=include_cleaned)
    return [WorktreeSchema.model_validate(w) for w in worktrees]


@router.get("/{worktree_id}", response_model=WorktreeSchema)
async def get_worktree(dispatcher: DispatcherDep, worktree_id: UUID) -> WorktreeSchema:
    worktree = await dispatcher.pool.get(worktree_id)
    if not worktree:
        raise HTTPException(status_code=404, detail="Worktree not found")
    return WorktreeSchema.model_validate(worktree)


@router.post("/{worktree_id}/cleanup", response_model=WorktreeSchema)
async def cleanup_worktree(
    dispatcher: DispatcherDep,
    worktree_id: UUID,
    delay_minutes: int = Query(0, ge=0, le=24 * 60),
) -> WorktreeSchema:
    """Schedule an idle or failed worktree for removal."""
    worktree = await dispatcher.pool.get(worktree_id)
    if not worktree:
        raise HTTPException(status_code=404, detail="Worktree not found")
    if not await dispatcher.pool.schedule_cleanup(worktree_id, delay_minutes):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot clean up worktree in {worktree.status.value} status",
        )
    return WorktreeSchema.model_validate(await dispatcher.pool.get(worktree_id))
