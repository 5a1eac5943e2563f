"""In-process handlers for lightweight job types.

Each handler receives the job payload, the worktree path (None for job types
that do not need one) and a log sink, and returns a ResultEnvelope.
"""

from pathlib import Path
from typing import Any

from flowpatch.errors import FailureReason
from flowpatch.models import JobType
from flowpatch.policy import CardStatus, validate_policy
from flowpatch.worker.executor import Handler, LogSink, ResultEnvelope, ResultStatus


async def handle_sync_push(
    payload: dict[str, Any], worktree_path: Path | None, log: LogSink
) -> ResultEnvelope:
    """
    Handle a SYNC_PUSH job.

    Expected payload:
    {
        "issue_number": 42,
        "status": "in_progress",
        "labels": ["bug"],  # optional
    }

    The label change itself is applied by the reconciler once the job
    succeeds; this only validates the request and names the target status.
    """
    status = payload.get("status")
    if not status:
        return ResultEnvelope(
            status=ResultStatus.FAILURE,
            error="Missing required field: status",
            reason=FailureReason.EXECUTOR_FAILURE,
        )
    try:
        card_status = CardStatus.parse(str(status))
    except ValueError:
        return ResultEnvelope(
            status=ResultStatus.FAILURE,
            error=f"Unknown card status: {status}",
            reason=FailureReason.EXECUTOR_FAILURE,
        )

    log(f"Pushing status {card_status.value} for issue #{payload.get('issue_number')}")
    return ResultEnvelope(
        status=ResultStatus.SUCCESS,
        summary=f"Status {card_status.value} ready to sync",
        artifacts={"card_status": card_status.value},
    )


async def handle_config_validate(
    payload: dict[str, Any], worktree_path: Path | None, log: LogSink
) -> ResultEnvelope:
    """Validate the policy document carried in ``payload["policy"]``."""
    validation = validate_policy(payload.get("policy") or {})
    for warning in validation.warnings:
        log(f"warning: {warning}")
    for error in validation.errors:
        log(f"error: {error}")

    artifacts = {"errors": validation.errors, "warnings": validation.warnings}
    if not validation.valid:
        return ResultEnvelope(
            status=ResultStatus.FAILURE,
            summary="Policy is invalid",
            artifacts=artifacts,
            error="; ".join(validation.errors),
            reason=FailureReason.EXECUTOR_FAILURE,
        )
    return ResultEnvelope(status=ResultStatus.SUCCESS, summary="Policy is valid", artifacts=artifacts)


async def handle_webhook_ingest(
    payload: dict[str, Any], worktree_path: Path | None, log: LogSink
) -> ResultEnvelope:
    """Record a webhook delivery."""
    event = payload.get("event", "unknown")
    log(f"Received webhook event {event} (delivery {payload.get('delivery_id') or '-'})")
    return ResultEnvelope(
        status=ResultStatus.SUCCESS,
        summary=f"Ingested {event}",
        artifacts={"event": event, "delivery_id": payload.get("delivery_id")},
    )


def default_handlers() -> dict[JobType, Handler]:
    return {
        JobType.SYNC_PUSH: handle_sync_push,
        JobType.CONFIG_VALIDATE: handle_config_validate,
        JobType.WEBHOOK_INGEST: handle_webhook_ingest,
    }
