"""Celery worker for framework usage jobs.

Two queues:
- framework_usage: one job per message, redelivered with backoff on failure
- framework_usage.dead_letter: jobs that exhausted their redeliveries

Docker Compose command:
    celery -A app.celery_worker worker --loglevel=info --concurrency=2 \
        -Q framework_usage,framework_usage.dead_letter
"""

from __future__ import annotations

import asyncio
from typing import Any

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.config import get_settings
from app.logging_config import get_logger, setup_logging
from services.delivery import (
    CeleryDeadLetterPublisher,
    DeliveryDecision,
    DeliveryOutcome,
    JobConsumer,
    RetryPolicy,
)
from services.models import Job

settings = get_settings()
logger = get_logger(__name__)

# Celery app instance
celery_app = Celery(
    "fum",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.job_timeout + 120,
    task_soft_time_limit=settings.job_timeout + 60,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue=settings.job_queue,
    task_routes={
        "app.celery_worker.compute_framework_usage": {"queue": settings.job_queue},
        "app.celery_worker.notify_dead_letter": {"queue": settings.dead_letter_queue},
    },
)


@celery_setup_logging.connect
def _configure_worker_logging(**_kwargs: Any) -> None:
    """Use the application's structlog setup instead of Celery's."""
    setup_logging()


async def _consume(payload: Any, retries: int) -> DeliveryDecision:
    """Run one delivery inside a task-scoped database session.

    The deadline and the commit both belong to the attempt, so a timeout or
    a failed commit is retried or dead-lettered like any pipeline error.
    """
    from db.session import worker_session
    from services.framework_usage_pipeline import run_pipeline

    async with worker_session() as session:

        async def run_job(job: Job) -> None:
            async with asyncio.timeout(settings.job_timeout):
                await run_pipeline(job, session)
            await session.commit()

        consumer = JobConsumer(
            run_job=run_job,
            dead_letters=CeleryDeadLetterPublisher(),
            policy=RetryPolicy.from_settings(settings),
            queue=settings.job_queue,
        )
        return await consumer.handle(payload, retries)


@celery_app.task(
    bind=True,
    name="app.celery_worker.compute_framework_usage",
    max_retries=settings.job_max_retries,
)
def compute_framework_usage(self, job: dict) -> dict:
    """Compute and persist framework usage for one user.

    Input errors are acknowledged without redelivery. Other failures are
    redelivered with geometric backoff; once redeliveries are exhausted the
    job goes to the dead-letter queue.

    Args:
        job: Job message with a sealed credential

    Returns:
        Dict with the delivery outcome
    """
    loop = asyncio.new_event_loop()
    try:
        decision = loop.run_until_complete(_consume(job, self.request.retries))
    finally:
        loop.close()

    if decision.outcome is DeliveryOutcome.RETRY:
        raise self.retry(
            exc=decision.error,
            countdown=decision.delay,
            max_retries=settings.job_max_retries,
        )
    return decision.to_dict()


@celery_app.task(
    name="app.celery_worker.notify_dead_letter",
    max_retries=0,
)
def notify_dead_letter(message: dict) -> dict:
    """Notify supervisors about a dead-lettered job. Never retried."""
    from services.dead_letter import DeadLetterHandler
    from services.mailer import SMTPMailer

    handler = DeadLetterHandler(
        mailer=SMTPMailer(settings),
        recipients=settings.supervisor_emails,
    )
    notification = handler.handle(message)
    if notification is None:
        return {"status": "malformed"}
    return {"status": "notified", "recipients": len(handler.recipients)}
