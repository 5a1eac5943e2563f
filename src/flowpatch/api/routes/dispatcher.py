"""Dispatcher status and pool configuration routes."""

from fastapi import APIRouter

from flowpatch.api.deps import DispatcherDep
from flowpatch.policy import WorkerPoolConfig
from flowpatch.schemas import DispatcherStatus

router = APIRouter()


@router.get("/", response_model=DispatcherStatus)
async def get_status(dispatcher: DispatcherDep) -> DispatcherStatus:
    return DispatcherStatus.model_validate(dispatcher.status())


@router.put("/pool", response_model=WorkerPoolConfig)
async def update_pool(dispatcher: DispatcherDep, config: WorkerPoolConfig) -> WorkerPoolConfig:
    """Hot-reload pool sizing; applied on the next tick without preempting running jobs."""
    dispatcher.update_pool_config(config)
    return config
