"""Dead-letter handling: tell operators about jobs that exhausted retries.

Terminal path. Nothing here raises back into the broker, so a dead letter
is never redelivered.
"""

from __future__ import annotations

import html
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from app.logging_config import get_logger
from app.metrics import DEAD_LETTER_NOTIFICATIONS
from services.delivery import HEADER_MESSAGE, HEADER_STACKTRACE, DeadLetter
from services.mailer import Mailer
from services.models import REDACTED

logger = get_logger(__name__)

_CREDENTIAL_FIELDS = ("credential", "sealed_credential", "token")

_EMAIL_TEMPLATE = """\
<html>
<body style="font-family: sans-serif;">
  <h2>Framework usage job failed</h2>
  <p>A job exhausted its retries and was moved to the dead-letter queue.</p>
  <h3>User</h3>
  <p>{username}</p>
  <h3>Email</h3>
  <p>{email}</p>
  <h3>Error Details</h3>
  <div style="white-space: pre-wrap; font-family: monospace;">{error_detail}</div>
  <h3>Original Request</h3>
  <div style="white-space: pre-wrap; font-family: monospace;">{original_job}</div>
</body>
</html>
"""


def redact_job(job: Mapping[str, Any]) -> dict[str, Any]:
    return {k: REDACTED if k in _CREDENTIAL_FIELDS else v for k, v in job.items()}


@dataclass(frozen=True)
class FailureNotification:
    username: str
    email: str | None
    error_detail: str
    original_job: dict[str, Any]

    @classmethod
    def from_dead_letter(cls, dead_letter: DeadLetter) -> FailureNotification:
        job = redact_job(dead_letter.job)
        detail = dead_letter.headers.get(HEADER_STACKTRACE) or dead_letter.headers.get(
            HEADER_MESSAGE, "No failure details captured"
        )
        return cls(
            username=str(job.get("username") or "unknown"),
            email=job.get("email"),
            error_detail=detail,
            original_job=job,
        )

    @property
    def subject(self) -> str:
        return f"[Framework Usage Miner] Job failed for {self.username}"

    def html_body(self) -> str:
        return _EMAIL_TEMPLATE.format(
            username=html.escape(self.username),
            email=html.escape(self.email or "not provided"),
            error_detail=html.escape(self.error_detail),
            original_job=html.escape(json.dumps(self.original_job, indent=2, default=str)),
        )


class DeadLetterHandler:
    def __init__(self, mailer: Mailer, recipients: Sequence[str]) -> None:
        self.mailer = mailer
        self.recipients = [r for r in recipients if r]

    def handle(self, message: Any) -> FailureNotification | None:
        try:
            dead_letter = DeadLetter.from_dict(message)
        except ValueError as exc:
            logger.error("dead_letter_malformed", error=str(exc))
            DEAD_LETTER_NOTIFICATIONS.labels(status="malformed").inc()
            return None

        notification = FailureNotification.from_dead_letter(dead_letter)
        logger.error(
            "dead_letter_received",
            username=notification.username,
            error=dead_letter.headers.get(HEADER_MESSAGE),
        )

        if not self.recipients:
            logger.error("dead_letter_no_recipients", username=notification.username)
            DEAD_LETTER_NOTIFICATIONS.labels(status="no_recipients").inc()
            return notification

        body = notification.html_body()
        for recipient in self.recipients:
            try:
                self.mailer.send(recipient, notification.subject, body)
            except Exception as exc:
                logger.error(
                    "dead_letter_notification_failed",
                    username=notification.username,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                DEAD_LETTER_NOTIFICATIONS.labels(status="failed").inc()
                continue
            DEAD_LETTER_NOTIFICATIONS.labels(status="sent").inc()

        logger.info(
            "dead_letter_notified",
            username=notification.username,
            recipients=len(self.recipients),
        )
        return notification
