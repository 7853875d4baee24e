"""Generation orchestrator tests (request entry point and upload/submit pipeline).

Tests focus on:
- Atomic debit + job creation under concurrent requests
- Full pipeline to processing
- Failure paths ending in refund
- Cancellation before submission
"""

import asyncio

import pytest

from pawmotion.models.credit_ledger import LedgerReason
from pawmotion.models.generation_job import FailureReason, JobStatus
from pawmotion.services.credits import ledger
from pawmotion.services.exceptions import (
    InsufficientBalance,
    JobNotFound,
    ProviderTransientError,
    StoragePermanentError,
)


async def balance_of(uow_factory, owner_id):
    async with await uow_factory() as uow:
        return await ledger.balance(uow, owner_id)


@pytest.mark.asyncio
async def test_concurrent_requests_with_one_credit(orchestrator, fund_owner, pet_photo, uow_factory):
    """Scenario: owner with balance 1 sends two generation requests at once.

    Expected: exactly one job is created, the other request gets InsufficientBalance,
    balance ends at 0.
    """
    await fund_owner("owner-1", 1)

    results = await asyncio.gather(
        orchestrator.request_generation("owner-1", pet_photo, "dog runs"),
        orchestrator.request_generation("owner-1", pet_photo, "dog jumps"),
        return_exceptions=True,
    )
    await orchestrator.wait_for_pipelines()

    jobs = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(jobs) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InsufficientBalance)
    assert jobs[0].status == JobStatus.UPLOADING
    assert await balance_of(uow_factory, "owner-1") == 0

    _, total = await orchestrator.list_jobs("owner-1")
    assert total == 1


@pytest.mark.asyncio
async def test_pipeline_reaches_processing(orchestrator, fund_owner, pet_photo, fake_provider, fake_storage):
    await fund_owner("owner-1", 1)

    job = await orchestrator.request_generation(
        "owner-1", pet_photo, "cat chases laser", style="watercolor", background=False
    )

    assert job.status == JobStatus.PROCESSING
    assert job.remote_task_id == "task-1"
    assert job.remote_image_url == f"https://storage.test/source-images/owner-1/{job.id}/source.jpg"
    assert fake_provider.created == [(job.remote_image_url, "cat chases laser", "watercolor")]
    assert job.next_poll_at is not None


@pytest.mark.asyncio
async def test_background_pipeline_reaches_processing(orchestrator, fund_owner, pet_photo):
    await fund_owner("owner-1", 1)

    job = await orchestrator.request_generation("owner-1", pet_photo, "dog runs")
    await orchestrator.wait_for_pipelines()

    stored = await orchestrator.get_job("owner-1", job.id)
    assert stored.status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_submission_failure_refunds(orchestrator, fund_owner, pet_photo, fake_provider, uow_factory):
    """Scenario: upload succeeds, provider answers 500 on all three attempts.

    Expected: job failed with submission_error, one refund, balance restored.
    """
    await fund_owner("owner-1", 1)
    fake_provider.create_errors = [ProviderTransientError("500") for _ in range(3)]

    job = await orchestrator.request_generation("owner-1", pet_photo, "dog runs", background=False)

    assert job.status == JobStatus.FAILED
    assert job.error_code == FailureReason.SUBMISSION_ERROR
    assert job.remote_task_id is None
    assert len(fake_provider.created) == 3
    assert await balance_of(uow_factory, "owner-1") == 1

    async with await uow_factory() as uow:
        refund = await uow.ledger.get_for_job(job.id, LedgerReason.GENERATION_REFUND)
    assert refund is not None
    assert refund.delta == 1


@pytest.mark.asyncio
async def test_upload_failure_refunds_without_submitting(
    orchestrator, fund_owner, pet_photo, fake_storage, fake_provider, uow_factory
):
    await fund_owner("owner-1", 1)
    fake_storage.put_errors = [StoragePermanentError("403")]

    job = await orchestrator.request_generation("owner-1", pet_photo, "dog runs", background=False)

    assert job.status == JobStatus.FAILED
    assert job.error_code == FailureReason.UPLOAD_ERROR
    assert fake_provider.created == []
    assert await balance_of(uow_factory, "owner-1") == 1


@pytest.mark.asyncio
async def test_missing_photo_fails_with_upload_error(orchestrator, fund_owner, owner_dir, uow_factory):
    await fund_owner("owner-1", 1)

    job = await orchestrator.request_generation(
        "owner-1", str(owner_dir / "gone.jpg"), "dog runs", background=False
    )

    assert job.status == JobStatus.FAILED
    assert job.error_code == FailureReason.UPLOAD_ERROR
    assert job.error_reason == "The selected photo could not be read."
    assert await balance_of(uow_factory, "owner-1") == 1


@pytest.mark.asyncio
async def test_cancel_before_upload_never_reaches_provider(
    orchestrator, reconciler, fund_owner, pet_photo, fake_storage, fake_provider, uow_factory
):
    await fund_owner("owner-1", 1)
    job = await reconciler.open_job("owner-1", pet_photo, "dog runs")

    cancelled = await orchestrator.cancel("owner-1", job.id)
    after = await orchestrator.run_pipeline(job.id)

    assert cancelled.status == JobStatus.FAILED
    assert cancelled.error_code == FailureReason.CANCELLED
    assert after.status == JobStatus.FAILED
    assert fake_storage.put_calls == 0
    assert fake_provider.created == []
    assert await balance_of(uow_factory, "owner-1") == 1


@pytest.mark.asyncio
async def test_jobs_are_scoped_to_owner(orchestrator, fund_owner, pet_photo):
    await fund_owner("owner-1", 1)
    job = await orchestrator.request_generation("owner-1", pet_photo, "dog runs", background=False)

    with pytest.raises(JobNotFound):
        await orchestrator.get_job("owner-2", job.id)
    with pytest.raises(JobNotFound):
        await orchestrator.cancel("owner-2", job.id)

    jobs, total = await orchestrator.list_jobs("owner-2")
    assert (jobs, total) == ([], 0)

    jobs, total = await orchestrator.list_jobs("owner-1", status=JobStatus.PROCESSING)
    assert [j.id for j in jobs] == [job.id]
