"""Tests for the Celery task wiring."""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from celery.exceptions import Retry

from app.celery_worker import (
    _consume,
    celery_app,
    compute_framework_usage,
    notify_dead_letter,
    settings,
)
from services.delivery import HEADER_MESSAGE, DeliveryDecision, DeliveryOutcome
from services.models import Job


class TestCeleryConfig:
    def test_reliable_delivery_settings(self):
        conf = celery_app.conf
        assert conf.task_acks_late is True
        assert conf.worker_prefetch_multiplier == 1
        assert conf.task_serializer == "json"

    def test_tasks_routed_to_their_queues(self):
        routes = celery_app.conf.task_routes
        assert routes["app.celery_worker.compute_framework_usage"] == {"queue": "framework_usage"}
        assert routes["app.celery_worker.notify_dead_letter"] == {
            "queue": "framework_usage.dead_letter"
        }


class TestComputeFrameworkUsage:
    def test_acked_delivery_returns_outcome(self):
        decision = DeliveryDecision(DeliveryOutcome.ACKED, attempt=1)
        with patch("app.celery_worker._consume", new=AsyncMock(return_value=decision)) as consume:
            result = compute_framework_usage.apply(kwargs={"job": {"username": "dev"}})

        assert result.get() == {"outcome": "acked", "attempt": 1}
        consume.assert_awaited_once_with({"username": "dev"}, 0)

    def test_retry_decision_schedules_redelivery(self):
        decision = DeliveryDecision(
            DeliveryOutcome.RETRY, attempt=2, delay=3.0, error=RuntimeError("boom")
        )
        with (
            patch("app.celery_worker._consume", new=AsyncMock(return_value=decision)) as consume,
            patch.object(
                compute_framework_usage, "retry", return_value=Retry("retrying")
            ) as retry,
        ):
            compute_framework_usage.apply(kwargs={"job": {"username": "dev"}}, retries=1)

        consume.assert_awaited_once_with({"username": "dev"}, 1)
        retry.assert_called_once()
        assert retry.call_args.kwargs["countdown"] == 3.0
        assert retry.call_args.kwargs["max_retries"] == 4

    def test_dead_lettered_delivery_completes(self):
        decision = DeliveryDecision(
            DeliveryOutcome.DEAD_LETTERED, attempt=5, error=RuntimeError("boom")
        )
        with patch("app.celery_worker._consume", new=AsyncMock(return_value=decision)):
            result = compute_framework_usage.apply(kwargs={"job": {"username": "dev"}}, retries=4)

        assert result.get()["outcome"] == "dead_lettered"


class TestNotifyDeadLetter:
    def test_sends_notification(self):
        mailer = MagicMock()
        message = {"job": {"username": "dev"}, "headers": {HEADER_MESSAGE: "boom"}}
        with (
            patch("services.mailer.SMTPMailer", return_value=mailer),
            patch("app.celery_worker.settings") as settings,
        ):
            settings.supervisor_emails = ["ops@example.com"]
            result = notify_dead_letter.apply(kwargs={"message": message})

        assert result.get() == {"status": "notified", "recipients": 1}
        mailer.send.assert_called_once()

    def test_malformed_message_is_not_retried(self):
        with patch("services.mailer.SMTPMailer"):
            result = notify_dead_letter.apply(kwargs={"message": {"nope": True}})
        assert result.get() == {"status": "malformed"}


def _session_scope(session):
    @asynccontextmanager
    async def scope():
        yield session

    return scope


@pytest.fixture
def job_message():
    return Job(username="dev", credential="ghp_test_token_fake_value").to_message()


@pytest.fixture
def session():
    session = MagicMock()
    session.commit = AsyncMock()
    return session


@pytest.mark.asyncio
class TestConsume:
    """The attempt covers the pipeline, its deadline and the commit."""

    async def test_success_commits_then_acks(self, job_message, session):
        with (
            patch("db.session.worker_session", _session_scope(session)),
            patch("services.framework_usage_pipeline.run_pipeline", new=AsyncMock()) as run,
        ):
            decision = await _consume(job_message, 0)

        assert decision.outcome is DeliveryOutcome.ACKED
        run.assert_awaited_once()
        session.commit.assert_awaited_once()

    async def test_commit_failure_is_retried(self, job_message, session):
        session.commit.side_effect = ConnectionError("db connection lost on commit")
        with (
            patch("db.session.worker_session", _session_scope(session)),
            patch("services.framework_usage_pipeline.run_pipeline", new=AsyncMock()),
        ):
            decision = await _consume(job_message, 0)

        assert decision.outcome is DeliveryOutcome.RETRY
        assert isinstance(decision.error, ConnectionError)

    async def test_commit_failure_on_last_attempt_is_dead_lettered(self, job_message, session):
        session.commit.side_effect = ConnectionError("db connection lost on commit")
        dead_letters = MagicMock()
        with (
            patch("db.session.worker_session", _session_scope(session)),
            patch("services.framework_usage_pipeline.run_pipeline", new=AsyncMock()),
            patch("app.celery_worker.CeleryDeadLetterPublisher", return_value=dead_letters),
        ):
            decision = await _consume(job_message, settings.job_max_retries)

        assert decision.outcome is DeliveryOutcome.DEAD_LETTERED
        dead_letters.publish.assert_called_once()

    async def test_deadline_overrun_is_retried(self, job_message, session):
        async def slow_pipeline(*_args):
            await asyncio.sleep(5)

        with (
            patch("db.session.worker_session", _session_scope(session)),
            patch(
                "services.framework_usage_pipeline.run_pipeline",
                new=AsyncMock(side_effect=slow_pipeline),
            ),
            patch.object(settings, "job_timeout", 0.01),
        ):
            decision = await _consume(job_message, 0)

        assert decision.outcome is DeliveryOutcome.RETRY
        assert isinstance(decision.error, TimeoutError)
        session.commit.assert_not_awaited()


def test_time_limits_sit_above_job_deadline():
    conf = celery_app.conf
    assert settings.job_timeout < conf.task_soft_time_limit < conf.task_time_limit
