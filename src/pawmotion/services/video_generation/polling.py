"""Poll schedule and ceiling for processing jobs."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from pawmotion.core.timezone import seconds_from_now
from pawmotion.models.generation_job import GenerationJob


@dataclass(frozen=True)
class PollPolicy:
    """Backoff schedule between polls and the hard ceiling on a job's lifetime.

    The n-th poll (0-based) is due `min(initial_delay * factor**n, max_delay)`
    seconds after the previous one. A job is abandoned once `max_attempts`
    polls were made or `timeout_seconds` elapsed since it was created,
    whichever comes first.
    """

    initial_delay: float = 5.0
    factor: float = 1.5
    max_delay: float = 60.0
    max_attempts: int = 120
    timeout_seconds: float = 1800.0

    def delay_for(self, attempt: int) -> float:
        return min(self.initial_delay * self.factor**attempt, self.max_delay)

    def next_poll_at(self, attempt: int, now: datetime | None = None) -> datetime:
        return seconds_from_now(self.delay_for(attempt), now)

    def deadline(self, job: GenerationJob) -> datetime:
        return job.created_at + timedelta(seconds=self.timeout_seconds)

    def is_exhausted(self, job: GenerationJob, now: datetime) -> bool:
        """True if the job hit the attempt limit or outlived the timeout."""
        return job.attempt_count >= self.max_attempts or now >= self.deadline(job)

    @classmethod
    def from_settings(cls, settings) -> "PollPolicy":
        return cls(
            initial_delay=settings.poll_initial_delay_seconds,
            factor=settings.poll_backoff_factor,
            max_delay=settings.poll_max_delay_seconds,
            max_attempts=settings.poll_max_attempts,
            timeout_seconds=settings.job_timeout_seconds,
        )
