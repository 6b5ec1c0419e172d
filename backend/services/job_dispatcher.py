"""Job dispatch: decide whether a user's usage needs recomputing.

Called on login/registration. Publication is fire-and-forget; the caller
only learns whether a job was enqueued.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import redis.asyncio as aioredis

from app.config import get_settings
from app.exceptions import QueuePublishError, UnknownUserError
from app.logging_config import get_logger
from app.metrics import JOBS_DISPATCHED
from services.models import Job
from services.stats_store import FrameworkUsageStore

logger = get_logger(__name__)

PENDING_KEY = "dispatch:pending:{user_id}"


class DispatchOutcome(str, Enum):
    PUBLISHED = "published"
    SKIPPED_FRESH = "skipped_fresh"
    SKIPPED_PENDING = "skipped_pending"


class JobPublisher(Protocol):
    def publish(self, message: dict[str, Any]) -> None: ...


class CeleryJobPublisher:
    """Publishes job messages to the durable work queue."""

    def publish(self, message: dict[str, Any]) -> None:
        from app.celery_worker import compute_framework_usage

        compute_framework_usage.apply_async(
            kwargs={"job": message},
            queue=get_settings().job_queue,
        )


class JobDispatcher:
    def __init__(
        self,
        store: FrameworkUsageStore,
        publisher: JobPublisher,
        redis: aioredis.Redis,
        freshness_window: timedelta | None = None,
        guard_ttl: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.publisher = publisher
        self.redis = redis
        self.freshness_window = freshness_window or timedelta(
            hours=settings.freshness_window_hours
        )
        self.guard_ttl = guard_ttl or settings.dispatch_guard_ttl
        self._clock = clock or (lambda: datetime.now(UTC))

    async def submit(self, job: Job) -> DispatchOutcome:
        user = await self.store.find_user(job.username)
        if user is None:
            JOBS_DISPATCHED.labels(outcome="unknown_user").inc()
            raise UnknownUserError()

        usage = await self.store.get_usage(user.id)
        if usage is not None and self._is_fresh(usage.last_updated):
            logger.info(
                "dispatch_skipped_fresh",
                user_id=str(user.id),
                last_updated=usage.last_updated.isoformat(),
            )
            return self._count(DispatchOutcome.SKIPPED_FRESH)

        guard = PENDING_KEY.format(user_id=user.id)
        acquired = await self.redis.set(guard, "1", nx=True, ex=self.guard_ttl)
        if not acquired:
            logger.info("dispatch_skipped_pending", user_id=str(user.id))
            return self._count(DispatchOutcome.SKIPPED_PENDING)

        try:
            self.publisher.publish(job.to_message())
        except Exception as exc:
            await self.redis.delete(guard)
            JOBS_DISPATCHED.labels(outcome="publish_failed").inc()
            logger.error("dispatch_publish_failed", user_id=str(user.id), error=str(exc))
            raise QueuePublishError() from exc

        logger.info("dispatch_published", user_id=str(user.id))
        return self._count(DispatchOutcome.PUBLISHED)

    def _is_fresh(self, last_updated: datetime | None) -> bool:
        if last_updated is None:
            return False
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=UTC)
        return self._clock() - last_updated < self.freshness_window

    @staticmethod
    def _count(outcome: DispatchOutcome) -> DispatchOutcome:
        JOBS_DISPATCHED.labels(outcome=outcome.value).inc()
        return outcome
