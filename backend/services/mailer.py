"""Outgoing mail for operator notifications."""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Protocol

from app.config import Settings, get_settings
from app.logging_config import get_logger

logger = get_logger(__name__)


class Mailer(Protocol):
    def send(self, to: str, subject: str, html_body: str) -> None: ...


class SMTPMailer:
    """Sends HTML mail through the configured SMTP relay."""

    def __init__(self, settings: Settings | None = None, timeout: float = 10.0) -> None:
        self.settings = settings or get_settings()
        self.timeout = timeout

    def send(self, to: str, subject: str, html_body: str) -> None:
        message = EmailMessage()
        message["From"] = self.settings.smtp_sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This notification requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")

        with smtplib.SMTP(
            self.settings.smtp_host, self.settings.smtp_port, timeout=self.timeout
        ) as smtp:
            if self.settings.smtp_use_tls:
                smtp.starttls()
            if self.settings.smtp_username and self.settings.smtp_password:
                smtp.login(
                    self.settings.smtp_username,
                    self.settings.smtp_password.get_secret_value(),
                )
            smtp.send_message(message)
        logger.debug("mail_sent", subject=subject)
