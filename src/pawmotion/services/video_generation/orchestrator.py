"""Generation orchestrator - request entry point and upload/submit pipeline.

Flow for one request:
    open_job (debit + uploading, one transaction)
    -> background pipeline: upload -> record_upload -> submit -> mark_processing
    -> video poll worker takes over until a terminal state

The pipeline suspends only on upload and submission I/O. Any failure ends in
reconciler.fail, which refunds the debit exactly once.
"""

import asyncio
from typing import Optional
from uuid import UUID

import structlog

from pawmotion.models.generation_job import FailureReason, GenerationJob, JobStatus
from pawmotion.services.exceptions import JobNotFound, SubmissionError, UploadError
from pawmotion.services.storage.upload_gateway import UploadGateway
from pawmotion.services.video_generation.reconciler import StateReconciler
from pawmotion.services.video_generation.submitter import JobSubmitter
from pawmotion.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


class GenerationOrchestrator:
    """Owns the request lifecycle up to the hand-off to the poll worker."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        reconciler: StateReconciler,
        upload_gateway: UploadGateway,
        submitter: JobSubmitter,
    ):
        self.uow_factory = uow_factory
        self.reconciler = reconciler
        self.upload_gateway = upload_gateway
        self.submitter = submitter
        self._pipelines: set[asyncio.Task] = set()

    async def request_generation(
        self,
        owner_id: str,
        source_image_ref: str,
        prompt: str,
        style: Optional[str] = None,
        pet_id: Optional[str] = None,
        background: bool = True,
    ) -> GenerationJob:
        """Debit a credit and start generating a video from the owner's photo.

        Args:
            owner_id: Requesting owner
            source_image_ref: Local path (or file:// URL) of the photo
            prompt: Generation prompt
            style: Optional style name
            pet_id: Optional pet the video belongs to
            background: Run the upload/submit pipeline as a background task
                (False runs it inline and returns the job after submission)

        Returns:
            The job, in uploading state when running in the background

        Raises:
            InsufficientBalance: No job is created and nothing is debited
            SourceImageForbidden: Reference outside the owner's staging directory
                (nothing is debited)
        """
        await asyncio.to_thread(self.upload_gateway.check_source_ref, owner_id, source_image_ref)

        job = await self.reconciler.open_job(owner_id, source_image_ref, prompt, style, pet_id)

        if not background:
            return await self.run_pipeline(job.id)

        task = asyncio.create_task(self._run_pipeline_safely(job.id))
        self._pipelines.add(task)
        task.add_done_callback(self._pipelines.discard)
        return job

    async def _run_pipeline_safely(self, job_id: UUID) -> None:
        try:
            await self.run_pipeline(job_id)
        except asyncio.CancelledError:
            # Shutdown: the job stays in uploading and startup recovery settles it
            logger.info("pipeline.cancelled", job_id=str(job_id))
            raise
        except Exception as e:
            logger.error(
                "pipeline.crashed",
                job_id=str(job_id),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self.reconciler.fail(
                job_id,
                FailureReason.INTERRUPTED,
                "Video generation was interrupted. Your credit has been refunded.",
            )

    async def run_pipeline(self, job_id: UUID) -> GenerationJob:
        """Upload the source image and submit the synthesis task.

        Never submits without a recorded upload URL, and stops as soon as the
        job leaves uploading (cancelled or timed out).

        Returns:
            Job after the last pipeline step
        """
        job = await self._load(job_id)
        if job.status != JobStatus.UPLOADING:
            return job
        log = logger.bind(job_id=str(job.id), owner_id=job.owner_id)

        try:
            remote_image_url = await self.upload_gateway.upload(
                job.owner_id, job.id, job.source_image_ref
            )
        except UploadError as e:
            log.warning("pipeline.upload_failed", error=str(e), error_type=type(e).__name__)
            return await self.reconciler.fail(job.id, FailureReason.UPLOAD_ERROR, e.user_message)

        job = await self.reconciler.record_upload(job.id, remote_image_url)
        if job.status != JobStatus.UPLOADING or job.cancel_requested:
            log.info("pipeline.stopped_before_submit", status=job.status.value)
            return job

        try:
            remote_task_id = await self.submitter.submit(
                remote_image_url, job.prompt, job.style
            )
        except SubmissionError as e:
            log.warning("pipeline.submission_failed", error=str(e), retryable=e.retryable)
            return await self.reconciler.fail(
                job.id, FailureReason.SUBMISSION_ERROR, e.user_message
            )

        return await self.reconciler.mark_processing(job.id, remote_task_id)

    async def _load(self, job_id: UUID) -> GenerationJob:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    async def cancel(self, owner_id: str, job_id: UUID) -> GenerationJob:
        """Request cancellation of one of the owner's jobs.

        Raises:
            JobNotFound: No such job for this owner
        """
        return await self.reconciler.request_cancel(owner_id, job_id)

    async def get_job(self, owner_id: str, job_id: UUID) -> GenerationJob:
        """Raises JobNotFound if the job does not exist or belongs to someone else."""
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_for_owner(job_id, owner_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    async def list_jobs(
        self,
        owner_id: str,
        status: Optional[JobStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[GenerationJob], int]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.list_by_owner(owner_id, status=status, offset=offset, limit=limit)

    async def wait_for_pipelines(self) -> None:
        """Wait until every background pipeline started so far has finished."""
        if self._pipelines:
            await asyncio.gather(*list(self._pipelines), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight pipelines (startup recovery settles their jobs)."""
        for task in list(self._pipelines):
            task.cancel()
        await self.wait_for_pipelines()
