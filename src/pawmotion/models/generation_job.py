"""GenerationJob entity - photo to video generation with lifecycle status tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from pawmotion.core.timezone import utcnow


class JobStatus(str, Enum):
    """Generation job lifecycle status."""

    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)
ACTIVE_STATUSES = (JobStatus.UPLOADING, JobStatus.PROCESSING)


class FailureReason(str, Enum):
    """Machine-readable cause stored alongside the human-readable error_reason."""

    UPLOAD_ERROR = "upload_error"
    SUBMISSION_ERROR = "submission_error"
    PROVIDER_FAILURE = "provider_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid generation job state transition."""

    pass


class GenerationJob(SQLModel, table=True):
    """GenerationJob is one photo to short video request funded by one credit debit."""

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=128, index=True)
    pet_id: Optional[str] = Field(default=None, max_length=128)
    prompt: str = Field(max_length=2000)
    style: Optional[str] = Field(default=None, max_length=100)

    source_image_ref: str = Field(max_length=1024)
    remote_image_url: Optional[str] = Field(default=None, max_length=2048)
    remote_task_id: Optional[str] = Field(default=None, max_length=255, index=True)

    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    progress: int = Field(default=0, ge=0, le=100)
    result_video_url: Optional[str] = Field(default=None, max_length=2048)
    error_code: Optional[FailureReason] = Field(default=None)
    error_reason: Optional[str] = Field(default=None, max_length=1000)

    credit_transaction_id: Optional[UUID] = Field(default=None)

    attempt_count: int = Field(default=0, ge=0)
    poll_failure_count: int = Field(default=0, ge=0)
    next_poll_at: Optional[datetime] = Field(default=None, index=True)
    cancel_requested: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _touch(self) -> None:
        self.updated_at = utcnow()

    def mark_uploading(self, credit_transaction_id: UUID) -> None:
        """Transition from pending to uploading once the debit is recorded.

        Args:
            credit_transaction_id: Ledger entry that funded this job

        Raises:
            InvalidStateTransition: If current status is not pending or job is already funded
        """
        if self.status != JobStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark uploading from {self.status.value}. Job must be in pending state."
            )
        if self.credit_transaction_id is not None:
            raise InvalidStateTransition(f"Job {self.id} is already funded.")
        self.credit_transaction_id = credit_transaction_id
        self.status = JobStatus.UPLOADING
        self._touch()

    def record_upload(self, remote_image_url: str) -> None:
        """Store the durable URL of the uploaded source image.

        Raises:
            InvalidStateTransition: If current status is not uploading
            ValueError: If remote_image_url is empty
        """
        if self.status != JobStatus.UPLOADING:
            raise InvalidStateTransition(
                f"Cannot record upload in {self.status.value}. Job must be in uploading state."
            )
        if not remote_image_url:
            raise ValueError("remote_image_url is required")
        self.remote_image_url = remote_image_url
        self._touch()

    def mark_processing(self, remote_task_id: str, next_poll_at: datetime) -> None:
        """Transition from uploading to processing once the provider accepted the task.

        Raises:
            InvalidStateTransition: If current status is not uploading
            ValueError: If remote_task_id is empty
        """
        if self.status != JobStatus.UPLOADING:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. "
                "Job must be in uploading state."
            )
        if not remote_task_id:
            raise ValueError("remote_task_id is required")
        self.remote_task_id = remote_task_id
        self.status = JobStatus.PROCESSING
        self.next_poll_at = next_poll_at
        self._touch()

    def apply_progress(self, reported: int | None) -> bool:
        """Apply provider-reported progress, never moving backwards.

        Args:
            reported: Provider progress percentage (None if the provider reports none)

        Returns:
            True if the visible progress changed
        """
        if reported is None or self.is_terminal:
            return False
        clamped = max(self.progress, min(100, max(0, int(reported))))
        if clamped == self.progress:
            return False
        self.progress = clamped
        self._touch()
        return True

    def schedule_next_poll(self, next_poll_at: datetime, failed: bool = False) -> None:
        """Count one poll attempt and set when the next one is due.

        Args:
            next_poll_at: Time the next poll becomes due
            failed: True if this attempt ended in a transient provider error

        Raises:
            InvalidStateTransition: If current status is not processing
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot schedule poll in {self.status.value}. Job must be in processing state."
            )
        self.attempt_count += 1
        if failed:
            self.poll_failure_count += 1
        self.next_poll_at = next_poll_at
        self._touch()

    def mark_completed(self, result_video_url: str) -> None:
        """Transition from processing to completed.

        Raises:
            InvalidStateTransition: If current status is not processing
            ValueError: If result_video_url is empty
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. "
                "Job must be in processing state."
            )
        if not result_video_url:
            raise ValueError("result_video_url is required")
        self.result_video_url = result_video_url
        self.progress = 100
        self.status = JobStatus.COMPLETED
        self.next_poll_at = None
        self.completed_at = utcnow()
        self._touch()

    def mark_failed(self, reason: FailureReason, message: str) -> None:
        """Transition from any non-terminal state to failed.

        Args:
            reason: Machine-readable failure cause
            message: Human-readable reason shown to the owner (truncated to 1000 chars)

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.error_code = reason
        self.error_reason = message[:1000]
        self.status = JobStatus.FAILED
        self.next_poll_at = None
        self.completed_at = utcnow()
        self._touch()
