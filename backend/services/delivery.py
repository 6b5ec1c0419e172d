"""Job delivery state machine.

    delivered -> processing -> ack
                            -> reject               (input errors, no redelivery)
                            -> retry (x K, backoff) -> dead-lettered

Broker-agnostic: the attempt counter comes from the broker, and the caller
turns the returned decision into an ack, a delayed redelivery or a
dead-letter publication.
"""

from __future__ import annotations

import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from app.config import Settings, get_settings
from app.exceptions import JobInputError
from app.logging_config import get_logger
from app.metrics import JOB_DELIVERIES
from services.models import Job

logger = get_logger(__name__)

# Failure headers attached to dead-lettered jobs
HEADER_MESSAGE = "x-exception-message"
HEADER_STACKTRACE = "x-exception-stacktrace"
HEADER_TYPE = "x-exception-type"
HEADER_ATTEMPTS = "x-delivery-attempts"
HEADER_QUEUE = "x-original-queue"
HEADER_FAILED_AT = "x-failed-at"


class DeliveryOutcome(str, Enum):
    ACKED = "acked"
    REJECTED = "rejected"
    RETRY = "retry"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class RetryPolicy:
    """Geometric redelivery schedule: initial * multiplier^n, capped."""

    max_retries: int = 4
    initial_delay: float = 1.0
    multiplier: float = 3.0
    max_delay: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryPolicy:
        settings = settings or get_settings()
        return cls(
            max_retries=settings.job_max_retries,
            initial_delay=settings.job_retry_initial_delay,
            multiplier=settings.job_retry_multiplier,
            max_delay=settings.job_retry_max_delay,
        )

    def delay_for(self, retries: int) -> float:
        """Delay before redelivery number `retries + 1`."""
        return min(self.initial_delay * self.multiplier**retries, self.max_delay)

    def exhausted(self, retries: int) -> bool:
        return retries >= self.max_retries


def failure_headers(
    exc: BaseException,
    attempts: int,
    queue: str,
    failed_at: datetime | None = None,
) -> dict[str, str]:
    stacktrace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        HEADER_MESSAGE: str(exc) or type(exc).__name__,
        HEADER_STACKTRACE: stacktrace,
        HEADER_TYPE: f"{type(exc).__module__}.{type(exc).__qualname__}",
        HEADER_ATTEMPTS: str(attempts),
        HEADER_QUEUE: queue,
        HEADER_FAILED_AT: (failed_at or datetime.now(UTC)).isoformat(),
    }


@dataclass(frozen=True)
class DeadLetter:
    """A failed job message plus the failure headers."""

    job: dict[str, Any]
    headers: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {"job": dict(self.job), "headers": dict(self.headers)}

    @classmethod
    def from_dict(cls, data: Any) -> DeadLetter:
        if not isinstance(data, dict):
            raise ValueError("dead letter must be an object")
        job = data.get("job")
        headers = data.get("headers") or {}
        if not isinstance(job, dict) or not isinstance(headers, dict):
            raise ValueError("dead letter must carry a job object and headers")
        return cls(job=job, headers={str(k): str(v) for k, v in headers.items()})


@dataclass
class DeliveryDecision:
    outcome: DeliveryOutcome
    attempt: int
    delay: float | None = None
    error: BaseException | None = field(default=None, repr=False)
    dead_letter: DeadLetter | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"outcome": self.outcome.value, "attempt": self.attempt}
        if self.delay is not None:
            result["delay"] = self.delay
        if self.error is not None:
            result["error"] = type(self.error).__name__
        return result


class DeadLetterPublisher(Protocol):
    def publish(self, message: dict[str, Any]) -> None: ...


class CeleryDeadLetterPublisher:
    """Publishes dead letters to the dead-letter queue."""

    def publish(self, message: dict[str, Any]) -> None:
        from app.celery_worker import notify_dead_letter

        notify_dead_letter.apply_async(
            kwargs={"message": message},
            queue=get_settings().dead_letter_queue,
        )


class JobConsumer:
    """Runs one delivery of a job message and decides what happens next."""

    def __init__(
        self,
        run_job: Callable[[Job], Awaitable[Any]],
        dead_letters: DeadLetterPublisher,
        policy: RetryPolicy | None = None,
        queue: str | None = None,
    ) -> None:
        self._run_job = run_job
        self._dead_letters = dead_letters
        self.policy = policy or RetryPolicy.from_settings()
        self.queue = queue or get_settings().job_queue

    async def handle(self, payload: Any, retries: int) -> DeliveryDecision:
        attempt = retries + 1
        try:
            job = Job.from_message(payload)
            await self._run_job(job)
        except JobInputError as exc:
            logger.warning("job_rejected", code=exc.code, attempt=attempt)
            return self._decide(DeliveryDecision(DeliveryOutcome.REJECTED, attempt, error=exc))
        except Exception as exc:
            return self._on_failure(payload, retries, exc)

        logger.info("job_completed", attempt=attempt)
        return self._decide(DeliveryDecision(DeliveryOutcome.ACKED, attempt))

    def _on_failure(self, payload: Any, retries: int, exc: Exception) -> DeliveryDecision:
        attempt = retries + 1
        if not self.policy.exhausted(retries):
            delay = self.policy.delay_for(retries)
            logger.warning(
                "job_failed_will_retry",
                attempt=attempt,
                delay_seconds=delay,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._decide(
                DeliveryDecision(DeliveryOutcome.RETRY, attempt, delay=delay, error=exc)
            )

        dead_letter = DeadLetter(
            job=payload if isinstance(payload, dict) else {"raw": repr(payload)},
            headers=failure_headers(exc, attempts=attempt, queue=self.queue),
        )
        logger.error(
            "job_dead_lettered",
            attempt=attempt,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self._dead_letters.publish(dead_letter.to_dict())
        return self._decide(
            DeliveryDecision(
                DeliveryOutcome.DEAD_LETTERED, attempt, error=exc, dead_letter=dead_letter
            )
        )

    @staticmethod
    def _decide(decision: DeliveryDecision) -> DeliveryDecision:
        JOB_DELIVERIES.labels(outcome=decision.outcome.value).inc()
        return decision
