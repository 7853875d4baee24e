"""Video poll worker - drives processing jobs to a terminal state.

Claims processing jobs whose next poll is due, asks the provider for their
status and hands every report to the State Reconciler. Jobs are polled
concurrently, each in its own transaction; there is no global lock.

Claiming uses FOR UPDATE SKIP LOCKED plus a lease: the claim transaction
pushes next_poll_at to now + POLL_LEASE_SECONDS and commits, so no other
sweep (in this or another process) picks a job again until its current poll
has been recorded or the lease runs out.
"""

import asyncio
from datetime import datetime
from uuid import UUID

import structlog

from pawmotion.core.config import Settings
from pawmotion.core.timezone import seconds_from_now, utcnow
from pawmotion.models.generation_job import FailureReason, GenerationJob, JobStatus
from pawmotion.services.exceptions import ProviderRejectedError, ProviderTransientError
from pawmotion.services.video_generation.polling import PollPolicy
from pawmotion.services.video_generation.providers import VideoProvider
from pawmotion.services.video_generation.reconciler import StateReconciler
from pawmotion.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


async def poll_job_once(
    job: GenerationJob,
    provider: VideoProvider,
    reconciler: StateReconciler,
    policy: PollPolicy,
    now: datetime | None = None,
) -> GenerationJob:
    """Run one poll iteration for a claimed job.

    Order of checks:
    1. Cancellation flag -> failed (cancelled)
    2. Ceiling (attempts or job timeout) -> failed (timeout)
    3. Provider status -> reconciler.record_poll
       Transient provider error -> reconciler.record_poll_failure
       Provider rejection (4xx) -> failed (provider_failure)

    Args:
        job: Claimed job snapshot
        provider: Video provider client
        reconciler: State reconciler (only writer of job status)
        policy: Poll schedule and ceiling
        now: Current time (default: utcnow)

    Returns:
        Job as stored after this iteration
    """
    now = now or utcnow()
    log = logger.bind(job_id=str(job.id), remote_task_id=job.remote_task_id)

    if job.cancel_requested:
        log.info("poll.cancelled")
        return await reconciler.fail(job.id, FailureReason.CANCELLED, "Cancelled by user")

    if policy.is_exhausted(job, now):
        log.warning(
            "poll.ceiling_reached",
            attempts=job.attempt_count,
            poll_failures=job.poll_failure_count,
            created_at=job.created_at.isoformat(),
        )
        return await reconciler.fail(
            job.id, FailureReason.TIMEOUT, "Video generation timed out. Please try again."
        )

    try:
        status = await provider.get_task_status(job.remote_task_id or "")
    except ProviderTransientError as e:
        return await reconciler.record_poll_failure(job.id, str(e), now)
    except ProviderRejectedError as e:
        log.warning("poll.rejected", status_code=e.status_code, error=str(e))
        return await reconciler.fail(
            job.id, FailureReason.PROVIDER_FAILURE, "The video service could not find this task."
        )

    log.debug("poll.status", status=status.status.value, progress=status.progress)
    return await reconciler.record_poll(job.id, status, now)


async def claim_due_jobs(
    uow_factory: UnitOfWorkFactory,
    lease_seconds: float,
    batch_size: int,
    now: datetime | None = None,
) -> list[GenerationJob]:
    """Claim a batch of due processing jobs under a lease (committed before polling)."""
    now = now or utcnow()
    async with await uow_factory() as uow:
        return await uow.jobs.claim_due_for_polling(
            now=now, lease_until=seconds_from_now(lease_seconds, now), limit=batch_size
        )


async def process_batch(
    uow_factory: UnitOfWorkFactory,
    provider: VideoProvider,
    reconciler: StateReconciler,
    policy: PollPolicy,
    settings: Settings,
) -> int:
    """Poll one batch of due jobs concurrently.

    Workflow:
    1. Claim due jobs (FOR UPDATE SKIP LOCKED + lease, committed)
    2. Poll each job concurrently, one transaction per job
    3. Log failures (successes are logged by the reconciler)
    4. Fail overdue jobs that never became due (provider silent, upload stuck)

    Returns:
        Number of jobs polled
    """
    jobs = await claim_due_jobs(
        uow_factory, settings.poll_lease_seconds, settings.worker_batch_size
    )

    if jobs:
        tasks = [poll_job_once(job, provider, reconciler, policy) for job in jobs]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                # Lease expiry makes the job due again
                logger.error(
                    "poll.failed",
                    job_id=str(job.id),
                    error=str(result),
                    error_type=type(result).__name__,
                )

    await reconciler.expire_overdue()
    return len(jobs)


async def recover_orphaned_jobs(
    reconciler: StateReconciler, settings: Settings
) -> list[UUID]:
    """Startup recovery: resume polling, fail interrupted uploads, finish missed refunds.

    Returns:
        Ids of jobs whose polling was resumed
    """
    report = await reconciler.recover(uploading_stale_seconds=settings.upload_stale_seconds)
    if report.resumed or report.interrupted or report.refunded:
        logger.info(
            "worker.recovery",
            resumed=len(report.resumed),
            interrupted=len(report.interrupted),
            refunded=len(report.refunded),
        )
    return report.resumed


async def run_video_poll_worker(
    uow_factory: UnitOfWorkFactory,
    provider: VideoProvider,
    reconciler: StateReconciler,
    settings: Settings,
) -> None:
    """Main worker loop for polling video generation jobs.

    Workflow:
    1. Run startup recovery
    2. Sweep at WORKER_SWEEP_INTERVAL_SECONDS (claim, poll, expire overdue)
    3. Handle CancelledError for graceful shutdown

    Args:
        uow_factory: Factory creating UnitOfWork instances
        provider: Video provider client
        reconciler: State reconciler
        settings: Application settings (sweep interval, batch size, poll policy)
    """
    policy = reconciler.poll_policy

    await recover_orphaned_jobs(reconciler, settings)

    logger.info(
        "worker.started",
        sweep_interval=settings.worker_sweep_interval_seconds,
        batch_size=settings.worker_batch_size,
        poll_initial_delay=policy.initial_delay,
        job_timeout=policy.timeout_seconds,
    )

    try:
        while True:
            try:
                await process_batch(uow_factory, provider, reconciler, policy, settings)
                await asyncio.sleep(settings.worker_sweep_interval_seconds)

            except asyncio.CancelledError:
                # Propagate cancellation for graceful shutdown
                raise

            except Exception as e:
                # Unexpected error in sweep loop - log and continue with backoff
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped")
        raise
