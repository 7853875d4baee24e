"""GenerationJob repository for PawMotion.

Provides data access methods for GenerationJob entities with worker coordination
via FOR UPDATE SKIP LOCKED.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pawmotion.models.credit_ledger import CreditLedgerEntry, LedgerReason
from pawmotion.models.generation_job import (
    ACTIVE_STATUSES,
    GenerationJob,
    JobStatus,
)


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Status, progress and result fields are written only through the model's
    transition methods, driven by the state reconciler. This repository loads,
    persists and claims rows.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new generation job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def save(self, job: GenerationJob) -> GenerationJob:
        """Flush changes made through the job's transition methods."""
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID, for_update: bool = False) -> GenerationJob | None:
        """Retrieve generation job by UUID.

        Args:
            job_id: Job's unique identifier
            for_update: Lock the row until the transaction ends

        Returns:
            GenerationJob if found, None otherwise
        """
        stmt = select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_owner(self, job_id: UUID, owner_id: str) -> GenerationJob | None:
        """Retrieve a job only if it belongs to the given owner."""
        result = await self.session.execute(
            select(GenerationJob).where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.owner_id == owner_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_by_owner(
        self,
        owner_id: str,
        status: JobStatus | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[GenerationJob], int]:
        """Retrieve an owner's jobs (newest first) with total count.

        Args:
            owner_id: Owner whose jobs to list
            status: Optional status filter
            offset: Number of jobs to skip (default: 0)
            limit: Maximum number of jobs to return (default: 20)

        Returns:
            Tuple of (jobs for current page, total matching jobs)
        """
        conditions = [GenerationJob.owner_id == owner_id]
        if status is not None:
            conditions.append(GenerationJob.status == status)

        count_result = await self.session.execute(
            select(func.count(GenerationJob.id)).where(*conditions)  # type: ignore[arg-type]
        )
        total = count_result.scalar() or 0

        data_result = await self.session.execute(
            select(GenerationJob)
            .where(*conditions)
            .order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(data_result.scalars().all()), total

    async def claim_due_for_polling(
        self, now: datetime, lease_until: datetime, limit: int = 10
    ) -> list[GenerationJob]:
        """Claim processing jobs whose next poll is due.

        Uses FOR UPDATE SKIP LOCKED so concurrent workers receive non-overlapping
        sets of jobs, then pushes next_poll_at to the lease expiry so no other
        sweep picks the same job while its poll is in flight. A worker that dies
        mid-poll releases the job when the lease expires.

        Query explanation:
        - WHERE status = 'processing' AND next_poll_at <= now: Due jobs only
        - ORDER BY next_poll_at ASC: Most overdue first
        - LIMIT: Batch size for worker
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Args:
            now: Current time (naive UTC)
            lease_until: Time until which the claimed jobs are reserved
            limit: Maximum number of jobs to claim (default: 10)

        Returns:
            List of claimed jobs
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.PROCESSING,  # type: ignore[arg-type]
                GenerationJob.next_poll_at <= now,  # type: ignore[arg-type,operator]
            )
            .order_by(GenerationJob.next_poll_at.asc())  # type: ignore[union-attr]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        jobs = list(result.scalars().all())
        for job in jobs:
            job.next_poll_at = lease_until
            self.session.add(job)
        await self.session.flush()
        return jobs

    async def get_overdue(self, created_before: datetime, limit: int = 100) -> list[GenerationJob]:
        """Retrieve non-terminal jobs created before the given deadline.

        Args:
            created_before: Jobs created earlier than this have exceeded the ceiling
            limit: Maximum number of jobs to return (default: 100)

        Returns:
            List of overdue jobs (oldest first)
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status.in_(ACTIVE_STATUSES),  # type: ignore[attr-defined]
                GenerationJob.created_at < created_before,  # type: ignore[arg-type]
            )
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_statuses(self, statuses: tuple[JobStatus, ...]) -> list[GenerationJob]:
        """Retrieve all jobs in any of the given statuses (oldest first)."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.status.in_(statuses))  # type: ignore[attr-defined]
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_failed_without_refund(self, limit: int = 100) -> list[GenerationJob]:
        """Retrieve failed jobs that were debited but never refunded.

        Query explanation:
        - WHERE status = 'failed' AND credit_transaction_id IS NOT NULL: Funded failures
        - NOT EXISTS refund entry for the job: Refund missing (crash between steps)
        """
        refund_exists = (
            select(CreditLedgerEntry.id)
            .where(
                CreditLedgerEntry.related_job_id == GenerationJob.id,  # type: ignore[arg-type]
                CreditLedgerEntry.reason == LedgerReason.GENERATION_REFUND,  # type: ignore[arg-type]
            )
            .exists()
        )
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.status == JobStatus.FAILED,  # type: ignore[arg-type]
                GenerationJob.credit_transaction_id.is_not(None),  # type: ignore[union-attr]
                ~refund_exists,
            )
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def request_cancel(self, job: GenerationJob) -> None:
        """Set the cancellation flag checked before each poll iteration."""
        job.cancel_requested = True
        self.session.add(job)
        await self.session.flush()
