"""Project model - a local repository mirrored from a remote tracker."""

from typing import Any

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from flowpatch.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class Project(Base, UUIDMixin, TimestampMixin):
    """A project whose cards are worked by the dispatcher."""

    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    local_path: Mapped[str] = mapped_column(String(1000), nullable=False)

    # Remote tracker ("github", "gitlab" or "local")
    provider: Mapped[str] = mapped_column(String(20), default="local", nullable=False)
    remote_repo: Mapped[str | None] = mapped_column(String(255))
    default_branch: Mapped[str] = mapped_column(String(255), default="main", nullable=False)

    # Raw policy JSON, parsed with flowpatch.policy.parse_policy on every use
    policy: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<Project {self.id} name={self.name}>"
