from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Optional

import anyio

from .config import Settings
from .errors import NotificationError
from .surveys.schema import Submission


logger = logging.getLogger(__name__)

SMTP_TIMEOUT = 15.0


def build_message(submission: Submission, sender: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = f"SurWhen: {submission.survey_title} - {submission.name}"
    msg["From"] = sender
    msg["To"] = sender
    if submission.target_email:
        msg["Bcc"] = submission.target_email
    if submission.user_email:
        msg["Cc"] = submission.user_email

    lines = [
        "Hello,",
        "",
        "A new survey response was submitted.",
        "",
        "Survey description:",
        submission.survey_description,
        "",
        "Submission details:",
        f"Name: {submission.name}",
    ]
    if submission.user_email:
        lines.append(f"Email: {submission.user_email}")
    lines.append(f"Reason: {submission.reason}")
    msg.set_content("\n".join(lines))

    details = [
        f"<li><strong>Name:</strong> {escape(submission.name)}</li>",
    ]
    if submission.user_email:
        details.append(f"<li><strong>Email:</strong> {escape(submission.user_email)}</li>")
    details.append(f"<li><strong>Reason:</strong> {escape(submission.reason)}</li>")
    items = "".join(details)
    msg.add_alternative(
        f"""
        <p>Hello,</p>
        <p>A new survey response was submitted.</p>
        <p><strong>Survey description:</strong><br>{escape(submission.survey_description)}</p>
        <p><strong>Submission details:</strong></p>
        <ul>
          {items}
        </ul>
        """,
        subtype="html",
    )
    return msg


class SubmissionMailer:
    """Relays survey submissions by e-mail, or only logs them without SMTP."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.smtp_host.strip())

    def _send_sync(self, msg: EmailMessage) -> None:
        s = self.settings
        if s.smtp_port == 465:
            server: smtplib.SMTP = smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=SMTP_TIMEOUT)
        else:
            server = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=SMTP_TIMEOUT)
        with server:
            if s.smtp_port != 465:
                server.starttls()
            if s.smtp_user:
                server.login(s.smtp_user, s.smtp_password)
            refused = server.send_message(msg)
        if refused:
            raise NotificationError(f"Email rejected by server: {', '.join(refused)}")

    async def send(self, submission: Submission) -> None:
        if not self.enabled:
            logger.info(
                "SMTP not configured; submission for %r from %s (%s) not mailed to %s",
                submission.survey_title, submission.name, submission.reason, submission.target_email,
            )
            return

        msg = build_message(submission, self.settings.smtp_from or self.settings.smtp_user)
        try:
            await anyio.to_thread.run_sync(self._send_sync, msg)
        except (OSError, smtplib.SMTPException) as exc:
            logger.error("Failed to send email for %r to %s: %s", submission.survey_title, submission.target_email, exc)
            raise NotificationError("Failed to send email notification") from exc
        logger.info("Email sent for %r to %s", submission.survey_title, submission.target_email)
