"""Lease store - exclusive, expiring ownership of jobs.

Every mutation is a single conditional UPDATE whose WHERE clause encodes the
expected current state; success is observed through ``rowcount``. Two dispatchers
racing for the same job therefore cannot both win, in one process or many.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Update

from flowpatch.errors import FailureReason, InvalidTransition
from flowpatch.logging import get_logger
from flowpatch.models import Job, JobState, utcnow

logger = get_logger(__name__)

DEFAULT_LEASE_SECONDS = 300

RELEASE_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED, JobState.PENDING_APPROVAL}
)


@dataclass(frozen=True)
class Lease:
    job_id: UUID
    owner_id: str
    expires_at: datetime


@dataclass(frozen=True)
class ClaimResult:
    granted: bool
    lease: Lease | None = None


def lease_is_void(now: datetime):
    """SQL criterion: the job holds no lease that is still valid at ``now``."""
    return or_(Job.lease_expires_at.is_(None), Job.lease_expires_at <= now)


class LeaseStore:
    """Claims, renews and releases job leases."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def _apply(self, stmt: Update) -> bool:
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    stmt.execution_options(synchronize_session=False)
                )
                await session.commit()
            except IntegrityError:
                # Moving the job into an active state would duplicate its dedupe key
                await session.rollback()
                logger.warning("lease.dedupe_conflict")
                return False
            return result.rowcount > 0

    async def claim(
        self,
        job_id: UUID,
        owner_id: str,
        ttl_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> ClaimResult:
        """Take the lease on a job and move it to ``running``.

        Granted only when no valid lease exists: a due ``queued`` job, a
        ``pending_approval`` job being resumed, or a ``running`` job whose
        lease expired (its previous owner is presumed dead).
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                or_(
                    and_(Job.state == JobState.QUEUED, Job.not_before <= now),
                    Job.state == JobState.PENDING_APPROVAL,
                    and_(Job.state == JobState.RUNNING, lease_is_void(now)),
                ),
            )
            .values(
                state=JobState.RUNNING,
                lease_owner_id=owner_id,
                lease_expires_at=expires_at,
                updated_at=now,
                version=Job.version + 1,
            )
        )
        if not await self._apply(stmt):
            logger.debug("lease.claim_denied", job_id=str(job_id), owner_id=owner_id)
            return ClaimResult(granted=False)

        logger.info(
            "lease.claimed",
            job_id=str(job_id),
            owner_id=owner_id,
            expires_at=expires_at.isoformat(),
        )
        return ClaimResult(
            granted=True,
            lease=Lease(job_id=job_id, owner_id=owner_id, expires_at=expires_at),
        )

    async def renew(
        self,
        job_id: UUID,
        owner_id: str,
        ttl_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> bool:
        """Extend the lease. Fails if the caller is not the owner or it already expired."""
        now = self._clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.RUNNING,
                Job.lease_owner_id == owner_id,
                Job.lease_expires_at > now,
            )
            .values(
                lease_expires_at=now + timedelta(seconds=ttl_seconds),
                updated_at=now,
                version=Job.version + 1,
            )
        )
        renewed = await self._apply(stmt)
        if not renewed:
            logger.warning("lease.renew_failed", job_id=str(job_id), owner_id=owner_id)
        return renewed

    async def release(
        self,
        job_id: UUID,
        owner_id: str,
        terminal_state: JobState,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        """Clear the lease and record the outcome of a run."""
        if terminal_state not in RELEASE_STATES:
            raise InvalidTransition(f"Cannot release job into state {terminal_state.value}")

        now = self._clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.RUNNING,
                Job.lease_owner_id == owner_id,
            )
            .values(
                state=terminal_state,
                lease_owner_id=None,
                lease_expires_at=None,
                result=result,
                error=error,
                finished_at=now if terminal_state.is_terminal else None,
                updated_at=now,
                version=Job.version + 1,
            )
        )
        released = await self._apply(stmt)
        if released:
            logger.info("lease.released", job_id=str(job_id), state=terminal_state.value)
        else:
            logger.warning(
                "lease.release_rejected",
                job_id=str(job_id),
                owner_id=owner_id,
                state=terminal_state.value,
            )
        return released

    async def requeue(
        self,
        job_id: UUID,
        owner_id: str,
        not_before: datetime,
        error: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Release a failed run back to ``queued`` for another attempt."""
        now = self._clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state == JobState.RUNNING,
                Job.lease_owner_id == owner_id,
            )
            .values(
                state=JobState.QUEUED,
                attempt_count=Job.attempt_count + 1,
                not_before=not_before,
                lease_owner_id=None,
                lease_expires_at=None,
                result=result,
                error=error,
                updated_at=now,
                version=Job.version + 1,
            )
        )
        requeued = await self._apply(stmt)
        if requeued:
            logger.info(
                "lease.requeued",
                job_id=str(job_id),
                not_before=not_before.isoformat(),
            )
        return requeued

    async def force_cancel(self, job_id: UUID, reason: str = "Canceled by user") -> bool:
        """Cancel a job regardless of who holds its lease."""
        now = self._clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.state.in_(
                    [JobState.QUEUED, JobState.RUNNING, JobState.PENDING_APPROVAL]
                ),
            )
            .values(
                state=JobState.CANCELED,
                lease_owner_id=None,
                lease_expires_at=None,
                result={"status": "canceled", "reason": FailureReason.CANCELED.value},
                error=reason,
                finished_at=now,
                updated_at=now,
                version=Job.version + 1,
            )
        )
        canceled = await self._apply(stmt)
        if canceled:
            logger.info("lease.force_canceled", job_id=str(job_id))
        return canceled

    async def expire_approval(
        self,
        job_id: UUID,
        reason: FailureReason = FailureReason.APPROVAL_TIMEOUT,
    ) -> bool:
        """Fail a ``pending_approval`` job that was never resumed."""
        now = self._clock()
        message = "Approval window expired before the job was resumed"
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.state == JobState.PENDING_APPROVAL)
            .values(
                state=JobState.FAILED,
                result={"status": "failed", "reason": reason.value, "error": message},
                error=message,
                finished_at=now,
                updated_at=now,
                version=Job.version + 1,
            )
        )
        expired = await self._apply(stmt)
        if expired:
            logger.info("lease.approval_expired", job_id=str(job_id), reason=reason.value)
        return expired

    async def get_lease(self, job_id: UUID) -> Lease | None:
        """Current valid lease on a job, if any."""
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(Job.lease_owner_id, Job.lease_expires_at).where(Job.id == job_id)
                )
            ).one_or_none()
        if row is None or row.lease_owner_id is None or row.lease_expires_at is None:
            return None
        if row.lease_expires_at <= self._clock():
            return None
        return Lease(job_id=job_id, owner_id=row.lease_owner_id, expires_at=row.lease_expires_at)
