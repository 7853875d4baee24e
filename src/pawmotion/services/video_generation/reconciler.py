"""State Reconciler - the single writer of generation job status.

Every status, progress and result change goes through this module, each in its
own transaction with the job row locked. The reconciler is also the only place
that refunds credits: a job that fails after being debited gets exactly one
generation_refund entry, guarded by the ledger's per-job uniqueness so the
refund can be re-attempted safely after a crash.

Committed changes are published to the Notifier after the transaction ends.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

from pawmotion.core.timezone import utcnow
from pawmotion.models.credit_ledger import LedgerReason
from pawmotion.models.generation_job import FailureReason, GenerationJob, JobStatus
from pawmotion.services.credits import ledger
from pawmotion.services.exceptions import JobNotFound
from pawmotion.services.notifier import JobNotifier, JobStateChange
from pawmotion.services.video_generation.polling import PollPolicy
from pawmotion.services.video_generation.providers import ProviderTaskState, TaskStatus
from pawmotion.uow import UnitOfWork, UnitOfWorkFactory

logger = structlog.get_logger(__name__)

JobUpdate = Callable[[UnitOfWork, GenerationJob], Awaitable[None]]


@dataclass
class RecoveryReport:
    """Summary of a startup recovery pass."""

    resumed: list[UUID] = field(default_factory=list)
    interrupted: list[UUID] = field(default_factory=list)
    refunded: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)


def _change(job: GenerationJob, old_status: Optional[JobStatus]) -> JobStateChange:
    return JobStateChange(
        job_id=job.id,
        owner_id=job.owner_id,
        old_status=old_status.value if old_status else None,
        new_status=job.status.value,
        progress=job.progress,
        error_reason=job.error_reason,
        result_video_url=job.result_video_url,
    )


class StateReconciler:
    """Applies job transitions and refunds in short per-job transactions."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        notifier: JobNotifier,
        poll_policy: PollPolicy | None = None,
        credit_cost: int = 1,
    ):
        self.uow_factory = uow_factory
        self.notifier = notifier
        self.poll_policy = poll_policy or PollPolicy()
        self.credit_cost = credit_cost

    async def open_job(
        self,
        owner_id: str,
        source_image_ref: str,
        prompt: str,
        style: Optional[str] = None,
        pet_id: Optional[str] = None,
    ) -> GenerationJob:
        """Create a job, debit one generation's cost and move it to uploading.

        All three steps commit together. If the debit is refused the
        transaction rolls back and no job exists.

        Raises:
            InsufficientBalance: Owner cannot afford the generation
        """
        async with await self.uow_factory() as uow:
            job = GenerationJob(
                owner_id=owner_id,
                source_image_ref=source_image_ref,
                prompt=prompt,
                style=style,
                pet_id=pet_id,
            )
            await uow.jobs.add(job)
            transaction_id = await ledger.debit(uow, owner_id, self.credit_cost, job.id)
            job.mark_uploading(transaction_id)
            await uow.jobs.save(job)

        logger.info(
            "job.opened",
            job_id=str(job.id),
            owner_id=owner_id,
            credit_transaction_id=str(job.credit_transaction_id),
        )
        self.notifier.publish(_change(job, None))
        return job

    async def _transition(self, job_id: UUID, update: JobUpdate) -> GenerationJob:
        """Load the job under lock, apply `update`, commit, then publish if visible state moved."""
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id, for_update=True)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            old_status, old_progress = job.status, job.progress
            await update(uow, job)
            await uow.jobs.save(job)

        if job.status != old_status or job.progress != old_progress:
            self.notifier.publish(_change(job, old_status))
        return job

    async def _refund(self, uow: UnitOfWork, job: GenerationJob) -> bool:
        """Return the job's debit to the owner unless already refunded.

        Returns:
            True if a refund entry was written in this transaction
        """
        if job.credit_transaction_id is None:
            return False

        debit_entry = await uow.ledger.get_for_job(job.id, LedgerReason.GENERATION_DEBIT)
        if debit_entry is None:
            logger.error("job.refund.debit_missing", job_id=str(job.id))
            return False
        if await uow.ledger.get_for_job(job.id, LedgerReason.GENERATION_REFUND) is not None:
            return False

        await ledger.credit(
            uow,
            job.owner_id,
            -debit_entry.delta,
            LedgerReason.GENERATION_REFUND,
            related_job_id=job.id,
        )
        logger.info("job.refunded", job_id=str(job.id), owner_id=job.owner_id, amount=-debit_entry.delta)
        return True

    async def _fail(
        self, uow: UnitOfWork, job: GenerationJob, reason: FailureReason, message: str
    ) -> None:
        job.mark_failed(reason, message)
        await uow.jobs.save(job)
        await self._refund(uow, job)
        logger.info(
            "job.failed",
            job_id=str(job.id),
            owner_id=job.owner_id,
            error_code=reason.value,
            error_reason=job.error_reason,
        )

    async def record_upload(self, job_id: UUID, remote_image_url: str) -> GenerationJob:
        """Store the uploaded image URL. A job that already left uploading is returned unchanged."""

        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.status != JobStatus.UPLOADING:
                logger.info("job.upload.late", job_id=str(job.id), status=job.status.value)
                return
            job.record_upload(remote_image_url)

        return await self._transition(job_id, update)

    async def mark_processing(
        self, job_id: UUID, remote_task_id: str, now: datetime | None = None
    ) -> GenerationJob:
        """Record the provider task and hand the job to the poll scheduler."""

        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.status != JobStatus.UPLOADING:
                # Cancelled or timed out while the submission was in flight
                logger.warning(
                    "job.submission.late",
                    job_id=str(job.id),
                    status=job.status.value,
                    remote_task_id=remote_task_id,
                )
                return
            job.mark_processing(remote_task_id, self.poll_policy.next_poll_at(0, now))
            logger.info("job.submitted", job_id=str(job.id), remote_task_id=remote_task_id)

        return await self._transition(job_id, update)

    async def record_poll(
        self, job_id: UUID, status: TaskStatus, now: datetime | None = None
    ) -> GenerationJob:
        """Apply one provider status report.

        SUCCEEDED completes the job, FAILED fails it with provider_failure and
        refunds, anything else records (clamped) progress and schedules the
        next poll. Reports for jobs no longer processing are ignored.
        """

        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.status != JobStatus.PROCESSING:
                logger.info("poll.ignored", job_id=str(job.id), status=job.status.value)
                return

            if status.status == ProviderTaskState.SUCCEEDED:
                if status.result_url:
                    job.mark_completed(status.result_url)
                    logger.info(
                        "job.completed",
                        job_id=str(job.id),
                        owner_id=job.owner_id,
                        result_video_url=status.result_url,
                        attempts=job.attempt_count,
                    )
                else:
                    await self._fail(
                        uow,
                        job,
                        FailureReason.PROVIDER_FAILURE,
                        "Video service reported success without a video",
                    )
                return

            if status.status == ProviderTaskState.FAILED:
                await self._fail(
                    uow,
                    job,
                    FailureReason.PROVIDER_FAILURE,
                    status.error or "Video generation failed",
                )
                return

            if status.progress is not None and status.progress < job.progress:
                logger.debug(
                    "poll.progress_regressed",
                    job_id=str(job.id),
                    current=job.progress,
                    reported=status.progress,
                )
            job.apply_progress(status.progress)
            job.schedule_next_poll(self.poll_policy.next_poll_at(job.attempt_count + 1, now))

        return await self._transition(job_id, update)

    async def record_poll_failure(
        self, job_id: UUID, error: str, now: datetime | None = None
    ) -> GenerationJob:
        """Count a transient poll failure and schedule a retry on the same backoff."""

        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.status != JobStatus.PROCESSING:
                return
            job.schedule_next_poll(
                self.poll_policy.next_poll_at(job.attempt_count + 1, now), failed=True
            )
            logger.warning(
                "poll.transient_error",
                job_id=str(job.id),
                attempt=job.attempt_count,
                poll_failures=job.poll_failure_count,
                error=error,
            )

        return await self._transition(job_id, update)

    async def complete(self, job_id: UUID, result_video_url: str) -> GenerationJob:
        """Mark a processing job completed. Never refunds."""
        return await self.record_poll(
            job_id, TaskStatus(status=ProviderTaskState.SUCCEEDED, result_url=result_video_url)
        )

    async def fail(self, job_id: UUID, reason: FailureReason, message: str) -> GenerationJob:
        """Fail a non-terminal job and refund its debit. Terminal jobs are returned unchanged."""

        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.is_terminal:
                logger.info(
                    "job.fail.ignored", job_id=str(job.id), status=job.status.value, reason=reason.value
                )
                return
            await self._fail(uow, job, reason, message)

        return await self._transition(job_id, update)

    async def request_cancel(self, owner_id: str, job_id: UUID) -> GenerationJob:
        """Flag the owner's job for cancellation.

        A job still uploading is failed right away (before it reaches the
        provider). A processing job is failed by the poll scheduler before
        its next poll.

        Raises:
            JobNotFound: No such job for this owner
        """

        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.owner_id != owner_id:
                raise JobNotFound(f"Job {job_id} not found")
            if job.is_terminal:
                return
            await uow.jobs.request_cancel(job)
            logger.info("job.cancel_requested", job_id=str(job.id), status=job.status.value)
            if job.status in (JobStatus.PENDING, JobStatus.UPLOADING):
                await self._fail(uow, job, FailureReason.CANCELLED, "Cancelled by user")

        return await self._transition(job_id, update)

    async def expire_overdue(self, now: datetime | None = None, limit: int = 100) -> list[UUID]:
        """Fail every non-terminal job older than the job timeout.

        Runs without any provider input, so a job whose provider never answers
        still reaches a terminal state.

        Returns:
            Ids of the jobs failed with timeout
        """
        now = now or utcnow()
        created_before = now - timedelta(seconds=self.poll_policy.timeout_seconds)
        async with await self.uow_factory() as uow:
            overdue = await uow.jobs.get_overdue(created_before, limit=limit)
            overdue_ids = [job.id for job in overdue]

        expired = []
        for job_id in overdue_ids:
            job = await self.fail(
                job_id, FailureReason.TIMEOUT, "Video generation timed out. Please try again."
            )
            if job.error_code == FailureReason.TIMEOUT:
                expired.append(job_id)
        if expired:
            logger.info("job.expired_overdue", count=len(expired))
        return expired

    async def recover(
        self,
        now: datetime | None = None,
        uploading_stale_seconds: float = 0,
        dry_run: bool = False,
    ) -> RecoveryReport:
        """Reconcile jobs left mid-flight by a crash or restart.

        - uploading with a remote task id -> processing, due for polling now
        - uploading without a remote task id (stale) -> failed (interrupted) + refund
        - processing without a scheduled poll -> due for polling now
        - failed with a debit but no refund -> refund

        Each job is handled in its own transaction so one bad row cannot block the rest.

        Args:
            now: Current time (default: utcnow)
            uploading_stale_seconds: Leave uploads younger than this alone
                (another process may still be running their pipeline)
            dry_run: Report what would change without writing

        Returns:
            RecoveryReport listing affected job ids
        """
        now = now or utcnow()
        stale_before = now - timedelta(seconds=uploading_stale_seconds)
        report = RecoveryReport()

        async with await self.uow_factory() as uow:
            active = await uow.jobs.get_by_statuses(
                (JobStatus.PENDING, JobStatus.UPLOADING, JobStatus.PROCESSING)
            )
            unrefunded = await uow.jobs.get_failed_without_refund()
            active_snapshot = [(job.id, job.status, job.remote_task_id, job.updated_at) for job in active]
            unrefunded_ids = [job.id for job in unrefunded]

        logger.info(
            "recovery.started",
            active_jobs=len(active_snapshot),
            unrefunded_failures=len(unrefunded_ids),
            dry_run=dry_run,
        )

        for job_id, status, remote_task_id, updated_at in active_snapshot:
            if status == JobStatus.PROCESSING or remote_task_id:
                report.resumed.append(job_id)
                if not dry_run:
                    await self._resume(job_id, now)
            elif updated_at <= stale_before:
                report.interrupted.append(job_id)
                if not dry_run:
                    await self.fail(
                        job_id,
                        FailureReason.INTERRUPTED,
                        "Video generation was interrupted. Your credit has been refunded.",
                    )
            else:
                report.skipped.append(job_id)

        for job_id in unrefunded_ids:
            report.refunded.append(job_id)
            if not dry_run:
                await self._refund_failed(job_id)

        logger.info(
            "recovery.completed",
            resumed=len(report.resumed),
            interrupted=len(report.interrupted),
            refunded=len(report.refunded),
            skipped=len(report.skipped),
            dry_run=dry_run,
        )
        return report

    async def _resume(self, job_id: UUID, now: datetime) -> GenerationJob:
        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.status == JobStatus.UPLOADING and job.remote_task_id:
                job.mark_processing(job.remote_task_id, now)
            elif job.status == JobStatus.PROCESSING and job.next_poll_at is None:
                job.next_poll_at = now
            logger.info("recovery.job_resumed", job_id=str(job.id), remote_task_id=job.remote_task_id)

        return await self._transition(job_id, update)

    async def _refund_failed(self, job_id: UUID) -> GenerationJob:
        async def update(uow: UnitOfWork, job: GenerationJob) -> None:
            if job.status == JobStatus.FAILED:
                await self._refund(uow, job)

        return await self._transition(job_id, update)
