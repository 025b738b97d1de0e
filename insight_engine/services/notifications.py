"""
Completion / error emails sent to the submitter of a job.

Delivery is best-effort everywhere it is used: callers log a
``NotificationError`` and carry on, the job state is never affected.
"""
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from insight_engine.services.prompts import render_email

logger = logging.getLogger(__name__)

COMPLETION_SUBJECT = "Your Insight Engine Analysis is Complete!"
ERROR_SUBJECT = "There was a problem with your Insight Engine Analysis"


class NotificationError(RuntimeError):
    """Raised when an email could not be handed to the SMTP server."""


class Notifier:
    def __init__(
        self,
        host: str = "",
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "",
        base_url: str = "http://localhost:8000",
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "Notifier":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            sender=settings.SMTP_FROM,
            base_url=settings.BASE_URL,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.host)

    def report_url(self, job_id: str) -> str:
        return f"{self.base_url}/report/{job_id}"

    async def send_completion(self, to: str, job_id: str) -> bool:
        body = render_email("completion", job_id=job_id, report_url=self.report_url(job_id))
        logger.info(f"Sending completion email to {to} for job {job_id}")
        return await self._send(to, COMPLETION_SUBJECT, body)

    async def send_error(self, to: str, job_id: str, error: Optional[str]) -> bool:
        body = render_email("error", job_id=job_id, error=error or "Unknown error")
        logger.info(f"Sending error email to {to} for job {job_id}")
        return await self._send(to, ERROR_SUBJECT, body)

    async def _send(self, to: str, subject: str, body: str) -> bool:
        if not to:
            logger.warning(f"No recipient for '{subject}', skipping email.")
            return False
        if not self.enabled:
            logger.info(f"SMTP_HOST not configured, skipping email '{subject}' to {to}.")
            return False

        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed to send '{subject}' to {to}: {e}") from e
        return True

    def _deliver(self, message: EmailMessage) -> None:
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp:
            smtp.ehlo()
            if self.port != 465 and smtp.has_extn("starttls"):
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)
