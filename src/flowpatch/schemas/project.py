"""Project schemas for API request/response."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from flowpatch.policy import PolicyValidation

Provider = Literal["github", "gitlab", "local"]


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    local_path: str = Field(min_length=1)
    provider: Provider = "local"
    remote_repo: str | None = Field(default=None, description="owner/name or GitLab project path")
    default_branch: str = "main"
    policy: dict[str, Any] = Field(default_factory=dict)


class Project(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    local_path: str
    provider: Provider
    remote_repo: str | None = None
    default_branch: str
    policy: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class PolicyUpdate(BaseModel):
    policy: dict[str, Any]


class PolicyUpdateResponse(BaseModel):
    project: Project
    validation: PolicyValidation
