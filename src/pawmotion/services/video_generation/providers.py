"""Video synthesis provider clients with error classification.

Both clients expose the same two calls:
- create_task(image_url, prompt, style) -> provider task id
- get_task_status(task_id) -> TaskStatus

Classification rules (shared):
    - Timeout / connection errors -> ProviderTransientError
    - 408, 429, 5xx -> ProviderTransientError
    - Other 4xx -> ProviderRejectedError (never retried)
"""

import asyncio
from enum import Enum
from typing import Any, Optional, Protocol

import httpx
import replicate
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from replicate.exceptions import ReplicateError as ReplicateAPIError

from pawmotion.services.exceptions import ProviderRejectedError, ProviderTransientError

logger = structlog.get_logger(__name__)


class ProviderTaskState(str, Enum):
    """Normalized remote task state."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class TaskStatus(BaseModel):
    """One status report from the provider. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    status: ProviderTaskState
    progress: Optional[int] = None
    result_url: Optional[str] = None
    error: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        # Unrecognized states mean the task is still in flight
        normalized = str(value or "").upper()
        if normalized not in ProviderTaskState.__members__:
            return ProviderTaskState.RUNNING
        return normalized


class VideoProvider(Protocol):
    """Remote video synthesis service."""

    async def create_task(self, image_url: str, prompt: str, style: Optional[str]) -> str: ...

    async def get_task_status(self, task_id: str) -> TaskStatus: ...


def classify_status_code(status_code: int, body: str) -> Exception | None:
    """Map an HTTP status to a provider error (None for success)."""
    if status_code in (408, 429) or status_code >= 500:
        return ProviderTransientError(f"Provider unavailable ({status_code}): {body}")
    if status_code >= 400:
        return ProviderRejectedError(
            f"Provider rejected request ({status_code}): {body}", status_code=status_code
        )
    return None


class HttpVideoProvider:
    """Client for a task-based image-to-video HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        duration_seconds: int = 5,
        resolution: str = "720P",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize provider client.

        Args:
            base_url: Provider API base URL (VIDEO_PROVIDER_BASE_URL)
            api_key: Provider API key (VIDEO_PROVIDER_API_KEY)
            model: Model identifier sent with each task
            duration_seconds: Requested clip length
            resolution: Requested output resolution
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.duration_seconds = duration_seconds
        self.resolution = resolution
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, **kwargs
                )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Request timeout after {self.timeout}s: {str(e)}")
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Network error: {str(e)}")

        error = classify_status_code(response.status_code, response.text)
        if error is not None:
            raise error
        return response

    async def create_task(self, image_url: str, prompt: str, style: Optional[str]) -> str:
        """Create a synthesis task.

        Returns:
            Provider task id

        Raises:
            ProviderTransientError: Timeout, network error, 408, 429 or 5xx
            ProviderRejectedError: Other 4xx or a response without a task id
        """
        payload = {
            "model": self.model,
            "input": {"image_url": image_url, "prompt": prompt},
            "parameters": {
                "style": style,
                "duration": self.duration_seconds,
                "resolution": self.resolution,
            },
        }
        response = await self._request("POST", "/tasks", json=payload)
        try:
            task_id = response.json().get("task_id")
        except ValueError:
            task_id = None
        if not task_id:
            raise ProviderRejectedError(
                f"Provider response has no task_id: {response.text}",
                status_code=response.status_code,
            )
        return str(task_id)

    async def get_task_status(self, task_id: str) -> TaskStatus:
        """Fetch the current task status.

        Raises:
            ProviderTransientError: Timeout, network error, 408, 429, 5xx or unparseable body
            ProviderRejectedError: Other 4xx (for example unknown task id)
        """
        response = await self._request("GET", f"/tasks/{task_id}")
        try:
            return TaskStatus.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            # Garbled status bodies are retried like any other flaky response
            raise ProviderTransientError(f"Malformed status response: {str(e)}")


REPLICATE_STATES = {
    "starting": ProviderTaskState.PENDING,
    "processing": ProviderTaskState.RUNNING,
    "succeeded": ProviderTaskState.SUCCEEDED,
    "failed": ProviderTaskState.FAILED,
    "canceled": ProviderTaskState.FAILED,
}


def classify_replicate_error(exception: Exception) -> Exception:
    """Classify a Replicate SDK or network exception."""
    status = getattr(exception, "status", None)
    if isinstance(status, int):
        return classify_status_code(status, str(exception)) or ProviderTransientError(
            str(exception)
        )

    # The SDK talks to the API through httpx
    if isinstance(exception, httpx.TimeoutException):
        return ProviderTransientError(f"Replicate request timeout: {exception}")
    if isinstance(exception, httpx.TransportError):
        return ProviderTransientError(f"Replicate network error: {exception}")

    error_message_lower = str(exception).lower()
    if "timeout" in error_message_lower or "rate limit" in error_message_lower:
        return ProviderTransientError(f"Transient Replicate error: {exception}")
    if isinstance(exception, (ConnectionError, OSError, TimeoutError)):
        return ProviderTransientError(f"Connection error: {exception}")
    return ProviderRejectedError(f"Replicate rejected request: {exception}")


class ReplicateVideoProvider:
    """Video provider backed by the Replicate predictions API."""

    def __init__(self, api_token: str, model: str, **client_kwargs):
        """Initialize provider client.

        Args:
            api_token: Replicate API token (REPLICATE_API_TOKEN)
            model: Replicate model reference ("owner/name")
            **client_kwargs: Passed to replicate.Client (tests inject an httpx transport)
        """
        self.model = model
        self.client = replicate.Client(api_token=api_token, **client_kwargs)

    async def _call(self, func, *args, **kwargs):
        # SDK is synchronous; run it in the thread pool
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (
            ReplicateAPIError,
            httpx.TimeoutException,
            httpx.TransportError,
            ConnectionError,
            OSError,
            TimeoutError,
        ) as e:
            raise classify_replicate_error(e) from e

    async def create_task(self, image_url: str, prompt: str, style: Optional[str]) -> str:
        full_prompt = f"{prompt}, {style} style" if style else prompt
        prediction = await self._call(
            self.client.predictions.create,
            model=self.model,
            input={"image": image_url, "prompt": full_prompt},
        )
        return prediction.id

    async def get_task_status(self, task_id: str) -> TaskStatus:
        prediction = await self._call(self.client.predictions.get, task_id)

        result_url = None
        if prediction.output:
            output = prediction.output
            result_url = str(output[0]) if isinstance(output, list) else str(output)

        progress = None
        if prediction.progress is not None:
            progress = int(prediction.progress.percentage * 100)

        return TaskStatus(
            status=REPLICATE_STATES.get(prediction.status, ProviderTaskState.RUNNING),
            progress=progress,
            result_url=result_url,
            error=str(prediction.error) if prediction.error else None,
        )


def create_video_provider(settings) -> VideoProvider:
    """Build the provider selected by VIDEO_PROVIDER.

    Raises:
        ValueError: Unknown provider name
    """
    if settings.video_provider == "replicate":
        return ReplicateVideoProvider(
            api_token=settings.replicate_api_token,
            model=settings.replicate_video_model,
        )
    if settings.video_provider == "http":
        return HttpVideoProvider(
            base_url=settings.video_provider_base_url,
            api_key=settings.video_provider_api_key,
            model=settings.video_model,
            duration_seconds=settings.video_duration_seconds,
            resolution=settings.video_resolution,
            timeout=settings.provider_timeout_seconds,
        )
    raise ValueError(f"Unsupported video provider: {settings.video_provider}")
