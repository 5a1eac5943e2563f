"""Status/label reconciler.

After a worker run or sync push succeeds, moves the card's remote issue to the
label of its new status. Failures are reported, never raised: a job that
succeeded stays succeeded whatever the tracker says.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flowpatch.errors import ReconciliationFailure
from flowpatch.logging import get_logger
from flowpatch.models import Job, JobType, Project
from flowpatch.policy import CardStatus, parse_policy
from flowpatch.services.labels import find_matching_label, is_status_label, status_from_labels
from flowpatch.services.tracker_client import LabelClient

logger = get_logger(__name__)

LabelClientFactory = Callable[[Project], LabelClient | None]


@dataclass
class ReconcileReport:
    applied: bool = False
    status: CardStatus | None = None
    previous_status: CardStatus | None = None
    label: str | None = None
    created_label: bool = False
    diagnostics: list[str] = field(default_factory=list)


def resolve_status(job: Job, result: dict[str, Any] | None) -> CardStatus | None:
    """
    New card status after a successful job.

    An explicit ``card_status`` artifact wins, then the payload's requested
    status; worker runs default to ``in_review``.
    """
    artifacts = (result or {}).get("artifacts") or {}
    candidates = [
        artifacts.get("card_status"),
        job.payload.get("status"),
        job.payload.get("target_status"),
    ]
    for candidate in candidates:
        if candidate:
            try:
                return CardStatus.parse(str(candidate))
            except ValueError:
                logger.warning(
                    "reconciler.unknown_status", job_id=str(job.id), status=candidate
                )
    if job.type == JobType.WORKER_RUN:
        return CardStatus.IN_REVIEW
    return None


class Reconciler:
    """Applies status labels on the remote tracker."""

    def __init__(self, client_factory: LabelClientFactory):
        self._client_factory = client_factory

    async def reconcile(
        self,
        job: Job,
        project: Project,
        result: dict[str, Any] | None = None,
    ) -> ReconcileReport:
        report = ReconcileReport()
        if not job.type.reconciles_labels:
            return report

        issue_number = job.payload.get("issue_number")
        if issue_number is None:
            report.diagnostics.append("Job has no remote issue number")
            return report

        report.status = resolve_status(job, result)
        if report.status is None:
            report.diagnostics.append("No target status could be resolved")
            return report

        client = self._client_factory(project)
        if client is None:
            report.diagnostics.append(f"No label client for provider '{project.provider}'")
            return report

        sync = parse_policy(project.policy).sync
        target = sync.status_labels.label_for(report.status)
        try:
            async with client:
                repo_labels = await client.list_labels()
                label = find_matching_label(target, repo_labels)
                if label is None:
                    if not sync.create_missing_labels:
                        report.diagnostics.append(
                            f"Label '{target}' does not exist and label creation is disabled"
                        )
                        logger.warning(
                            "reconciler.label_missing", job_id=str(job.id), label=target
                        )
                        return report
                    await client.create_label(target, sync.label_color)
                    label = target
                    report.created_label = True

                current = await client.get_issue_labels(int(issue_number))
                report.previous_status = status_from_labels(current, sync.status_labels)
                kept = [
                    existing
                    for existing in current
                    if not is_status_label(existing, sync.status_labels)
                ]
                await client.set_labels(int(issue_number), [*kept, label])
        except ReconciliationFailure as e:
            report.diagnostics.append(str(e))
            logger.warning(
                "reconciler.failed",
                job_id=str(job.id),
                issue_number=issue_number,
                status_code=e.status_code,
                error=str(e),
            )
            return report

        report.applied = True
        report.label = label
        logger.info(
            "reconciler.applied",
            job_id=str(job.id),
            issue_number=issue_number,
            label=label,
            status=report.status.value,
            previous_status=report.previous_status.value if report.previous_status else None,
        )
        return report
