"""Job submitter tests: retry on transient provider errors, never on rejections."""

import httpx
import pytest

from pawmotion.services.exceptions import (
    ProviderRejectedError,
    ProviderTransientError,
    SubmissionError,
)
from pawmotion.services.retry import RetryPolicy, retry_transient
from pawmotion.services.video_generation.providers import ReplicateVideoProvider
from pawmotion.services.video_generation.submitter import JobSubmitter


@pytest.fixture
def submitter(fake_provider, no_sleep):
    return JobSubmitter(fake_provider, retry_policy=RetryPolicy(), sleep=no_sleep)


@pytest.mark.asyncio
async def test_submit_returns_task_id(submitter, fake_provider):
    task_id = await submitter.submit("https://storage.test/img.jpg", "dog runs", "cartoon")

    assert task_id == "task-1"
    assert fake_provider.created == [("https://storage.test/img.jpg", "dog runs", "cartoon")]


@pytest.mark.asyncio
async def test_transient_then_success(submitter, fake_provider, no_sleep):
    fake_provider.create_errors = [ProviderTransientError("503")]

    task_id = await submitter.submit("https://storage.test/img.jpg", "cat jumps")

    assert task_id == "task-2"
    assert no_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_exhausted_transient_errors_are_retryable(submitter, fake_provider, no_sleep):
    """Scenario: provider answers 500 on every attempt.

    Expected: exactly 3 attempts, then SubmissionError(retryable=True).
    """
    fake_provider.create_errors = [ProviderTransientError("500") for _ in range(3)]

    with pytest.raises(SubmissionError) as exc_info:
        await submitter.submit("https://storage.test/img.jpg", "cat jumps")

    assert exc_info.value.retryable is True
    assert len(fake_provider.created) == 3
    assert no_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_rejection_is_not_retried(submitter, fake_provider, no_sleep):
    fake_provider.create_errors = [ProviderRejectedError("bad prompt", status_code=400)]

    with pytest.raises(SubmissionError) as exc_info:
        await submitter.submit("https://storage.test/img.jpg", "cat jumps")

    assert exc_info.value.retryable is False
    assert len(fake_provider.created) == 1
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_submit_without_uploaded_image_is_refused(submitter, fake_provider):
    with pytest.raises(SubmissionError) as exc_info:
        await submitter.submit("", "cat jumps")

    assert exc_info.value.retryable is False
    assert fake_provider.created == []


def test_retry_policy_delays_are_capped():
    policy = RetryPolicy(max_attempts=6, base_delay=1.0, factor=2.0, max_delay=8.0)

    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]


@pytest.mark.asyncio
async def test_retry_transient_attaches_log_context(no_sleep):
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise ProviderTransientError("502")
        return "ok"

    result = await retry_transient(
        flaky, RetryPolicy(), sleep=no_sleep, operation="submit", job_id="job-1"
    )

    assert result == "ok"
    assert len(attempts) == 2
    assert no_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_replicate_network_errors_are_retried(no_sleep):
    """Scenario: Replicate is unreachable for every attempt.

    Expected: connection errors from the SDK's httpx client are retried,
    then surface as a retryable SubmissionError.
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    provider = ReplicateVideoProvider(
        "r8_test", "owner/model", transport=httpx.MockTransport(handler)
    )
    submitter = JobSubmitter(provider, retry_policy=RetryPolicy(), sleep=no_sleep)

    with pytest.raises(SubmissionError) as exc_info:
        await submitter.submit("https://storage.test/img.jpg", "dog runs")

    assert exc_info.value.retryable is True
    assert len(calls) == 3
    assert no_sleep.delays == [1.0, 2.0]
