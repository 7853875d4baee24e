"""Notifier - in-process fan-out of job state changes to owner subscribers.

Delivery is at-least-once to subscribers that are connected when the change is
published. Nothing is persisted beyond the job row itself; a client that
reconnects reads the job to catch up.

Buffers are bounded and publishing never blocks. A subscriber that falls a
full buffer behind is closed instead of silently losing events: it drains what
was buffered, then its stream ends and the client re-reads its jobs.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from uuid import UUID

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class JobStateChange:
    """Committed job change as seen by observers."""

    job_id: UUID
    owner_id: str
    old_status: Optional[str]
    new_status: str
    progress: int
    error_reason: Optional[str] = None
    result_video_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_id": str(self.job_id),
            "owner_id": self.owner_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "progress": self.progress,
            "error_reason": self.error_reason,
            "result_video_url": self.result_video_url,
        }


class Subscription:
    """One observer's bounded event buffer."""

    def __init__(self, owner_id: str, max_queue_size: int):
        self.owner_id = owner_id
        self.queue: asyncio.Queue[JobStateChange] = asyncio.Queue(maxsize=max_queue_size)
        self.lagged = False

    def offer(self, change: JobStateChange) -> bool:
        """Enqueue without blocking.

        Returns:
            False when the buffer is full; the subscription is then lagged
            and accepts nothing more
        """
        if self.lagged:
            return False
        try:
            self.queue.put_nowait(change)
        except asyncio.QueueFull:
            self.lagged = True
            return False
        return True

    @property
    def exhausted(self) -> bool:
        """Lagged and every buffered event has been consumed."""
        return self.lagged and self.queue.empty()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> JobStateChange:
        # A lagged queue is never waited on empty: it only lags while full
        if self.exhausted:
            raise StopAsyncIteration
        return await self.queue.get()


class JobNotifier:
    """Publishes job changes to every live subscriber of the job's owner."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscriptions: dict[str, set[Subscription]] = {}

    def subscribe(self, owner_id: str) -> Subscription:
        """Register an observer for the owner's jobs. Call unsubscribe when done."""
        subscription = Subscription(owner_id, self.max_queue_size)
        self._subscriptions.setdefault(owner_id, set()).add(subscription)
        logger.debug("notifier.subscribed", owner_id=owner_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.owner_id)
        if not subscriptions:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.owner_id]
        logger.debug(
            "notifier.unsubscribed",
            owner_id=subscription.owner_id,
            lagged=subscription.lagged,
        )

    async def stream(self, owner_id: str) -> AsyncIterator[JobStateChange]:
        """Subscribe and yield changes until the consumer stops iterating."""
        subscription = self.subscribe(owner_id)
        try:
            async for change in subscription:
                yield change
        finally:
            self.unsubscribe(subscription)

    def publish(self, change: JobStateChange) -> None:
        """Deliver a change to the owner's subscribers. Never blocks."""
        subscriptions = self._subscriptions.get(change.owner_id, ())
        for subscription in list(subscriptions):
            if not subscription.offer(change):
                logger.warning(
                    "notifier.subscriber_lagged",
                    owner_id=change.owner_id,
                    max_queue_size=self.max_queue_size,
                )
                self.unsubscribe(subscription)
        logger.debug(
            "notifier.published",
            job_id=str(change.job_id),
            owner_id=change.owner_id,
            new_status=change.new_status,
            progress=change.progress,
            subscribers=len(subscriptions),
        )

    def subscriber_count(self, owner_id: str) -> int:
        return len(self._subscriptions.get(owner_id, ()))
