"""Typed job payloads, one model per job type, keyed by ``type``."""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from flowpatch.models.job import JobType


class PayloadBase(BaseModel):
    # Unknown keys are kept so a configured priority field can live in the payload
    model_config = ConfigDict(extra="allow")


class SyncPollPayload(PayloadBase):
    type: Literal["sync_poll"] = "sync_poll"
    since: datetime | None = None
    full: bool = False


class SyncPushPayload(PayloadBase):
    type: Literal["sync_push"] = "sync_push"
    issue_number: int | None = None
    status: str | None = None
    labels: list[str] = Field(default_factory=list)


class WorkerRunPayload(PayloadBase):
    type: Literal["worker_run"] = "worker_run"
    title: str = ""
    body: str | None = None
    issue_number: int | None = None
    labels: list[str] = Field(default_factory=list)
    target_status: str = "in_review"
    approved: bool = False


class WebhookIngestPayload(PayloadBase):
    type: Literal["webhook_ingest"] = "webhook_ingest"
    event: str
    delivery_id: str | None = None
    body: dict[str, Any] = Field(default_factory=dict)


class WorkspaceEnsurePayload(PayloadBase):
    type: Literal["workspace_ensure"] = "workspace_ensure"


class IndexBuildPayload(PayloadBase):
    type: Literal["index_build"] = "index_build"
    full: bool = True


class IndexRefreshPayload(PayloadBase):
    type: Literal["index_refresh"] = "index_refresh"
    paths: list[str] = Field(default_factory=list)


class IndexWatchStartPayload(PayloadBase):
    type: Literal["index_watch_start"] = "index_watch_start"


class IndexWatchStopPayload(PayloadBase):
    type: Literal["index_watch_stop"] = "index_watch_stop"


class DocsRefreshPayload(PayloadBase):
    type: Literal["docs_refresh"] = "docs_refresh"


class ConfigValidatePayload(PayloadBase):
    type: Literal["config_validate"] = "config_validate"


class ContextPreviewPayload(PayloadBase):
    type: Literal["context_preview"] = "context_preview"
    query: str = ""


class RepairPayload(PayloadBase):
    type: Literal["repair"] = "repair"
    target: str = "all"


class MigratePayload(PayloadBase):
    type: Literal["migrate"] = "migrate"
    target_version: str | None = None


JobPayload = Annotated[
    SyncPollPayload
    | SyncPushPayload
    | WorkerRunPayload
    | WebhookIngestPayload
    | WorkspaceEnsurePayload
    | IndexBuildPayload
    | IndexRefreshPayload
    | IndexWatchStartPayload
    | IndexWatchStopPayload
    | DocsRefreshPayload
    | ConfigValidatePayload
    | ContextPreviewPayload
    | RepairPayload
    | MigratePayload,
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_payload(job_type: JobType, data: dict[str, Any] | None) -> JobPayload:
    """Validate a raw payload dict against the model for ``job_type``.

    Raises pydantic.ValidationError when the payload does not fit.
    """
    raw = dict(data or {})
    raw["type"] = job_type.value
    return _payload_adapter.validate_python(raw)
