"""Main API router that aggregates all route modules."""

from fastapi import APIRouter

from flowpatch.api.routes import dispatcher, jobs, projects, worktrees

api_router = APIRouter()

api_router.include_router(projects.router, prefix="/projects", tags=["projects"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(worktrees.router, prefix="/worktrees", tags=["worktrees"])
api_router.include_router(dispatcher.router, prefix="/dispatcher", tags=["dispatcher"])
