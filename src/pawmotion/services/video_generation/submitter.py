"""Job Submitter - creates the remote synthesis task for an uploaded image."""

import asyncio
from typing import Optional

import structlog

from pawmotion.services.exceptions import (
    ProviderRejectedError,
    ProviderTransientError,
    SubmissionError,
)
from pawmotion.services.retry import RetryPolicy, SleepFunc, retry_transient
from pawmotion.services.video_generation.providers import VideoProvider

logger = structlog.get_logger(__name__)


class JobSubmitter:
    """Submits synthesis tasks with bounded retries on transient failures."""

    def __init__(
        self,
        provider: VideoProvider,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    async def submit(
        self, remote_image_url: str, prompt: str, style: Optional[str] = None
    ) -> str:
        """Create a synthesis task at the provider.

        Args:
            remote_image_url: Durable URL returned by the upload gateway
            prompt: Generation prompt
            style: Optional style name

        Returns:
            Provider task id

        Raises:
            SubmissionError: retryable=False for a 4xx rejection (no retry attempted),
                retryable=True when transient failures exhausted the retry policy
        """
        if not remote_image_url:
            raise SubmissionError("Cannot submit before the source image is uploaded", retryable=False)

        try:
            task_id = await retry_transient(
                lambda: self.provider.create_task(remote_image_url, prompt, style),
                self.retry_policy,
                sleep=self.sleep,
                operation="submit",
            )
        except ProviderRejectedError as e:
            logger.warning("submission.rejected", status_code=e.status_code, error=str(e))
            raise SubmissionError(f"Provider rejected task: {str(e)}", retryable=False) from e
        except ProviderTransientError as e:
            logger.warning(
                "submission.exhausted", attempts=self.retry_policy.max_attempts, error=str(e)
            )
            raise SubmissionError(
                f"Provider unavailable after {self.retry_policy.max_attempts} attempts: {str(e)}",
                retryable=True,
            ) from e

        logger.info("submission.accepted", remote_task_id=task_id)
        return task_id
