"""
Email notification port.

The lifecycle engine only sees ``Notifier.notify``; which implementation
backs it is decided once at startup by ``build_notifier``.
"""
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import List, Optional, Sequence, Tuple

import pytz
import structlog

from ..config import Settings


log = structlog.get_logger(__name__)

SIGNATURE = "Best regards,\nTaskPilot Team"


@dataclass(frozen=True)
class NotifyResult:
    success: bool
    reason: Optional[str] = None


# (recipient_email, subject, body)
Message = Tuple[str, str, str]


class Notifier(ABC):
    @abstractmethod
    def notify(self, recipient_email: str, subject: str, body: str) -> NotifyResult:
        """Send one message. Implementations report failure instead of raising."""

    def notify_many(self, messages: Sequence[Message]) -> List[NotifyResult]:
        return [self.notify(*message) for message in messages]


class NullNotifier(Notifier):
    """Selected when email is not configured; records nothing and never fails."""

    def notify(self, recipient_email: str, subject: str, body: str) -> NotifyResult:
        log.info("notification_skipped", recipient=recipient_email, reason="email not configured")
        return NotifyResult(False, "email not configured")


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        mail_from: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.mail_from = mail_from
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _message(self, recipient_email: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.mail_from
        msg["To"] = recipient_email
        msg.set_content(body)
        return msg

    def notify(self, recipient_email: str, subject: str, body: str) -> NotifyResult:
        return self.notify_many([(recipient_email, subject, body)])[0]

    def notify_many(self, messages: Sequence[Message]) -> List[NotifyResult]:
        """Deliver every message over a single SMTP session."""
        if not messages:
            return []
        results: List[NotifyResult] = []
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
                if self.use_tls:
                    s.starttls()
                if self.username and self.password:
                    s.login(self.username, self.password)
                for recipient_email, subject, body in messages:
                    try:
                        s.send_message(self._message(recipient_email, subject, body))
                    except smtplib.SMTPRecipientsRefused as e:
                        log.warning("notification_failed", recipient=recipient_email, subject=subject, error=str(e))
                        results.append(NotifyResult(False, str(e)))
                        continue
                    log.info("notification_sent", recipient=recipient_email, subject=subject)
                    results.append(NotifyResult(True))
        except (smtplib.SMTPException, OSError) as e:
            log.warning("notification_failed", recipients=len(messages), error=str(e))
            # messages not yet confirmed share the session failure
            results.extend(NotifyResult(False, str(e)) for _ in messages[len(results):])
        return results


def build_notifier(settings: Settings) -> Notifier:
    if not settings.email_enabled:
        log.warning("email_disabled", reason="SMTP_HOST not set or ENABLE_EMAIL is false")
        return NullNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        mail_from=settings.mail_from,
        username=settings.smtp_username,
        password=settings.smtp_password,
        use_tls=settings.smtp_tls,
        timeout=settings.side_effect_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------


def format_when(value: datetime, timezone_str: str = "America/Vancouver") -> str:
    """
    Render a timestamp for humans in the given timezone.

    Args:
        value: Aware or naive (assumed UTC) datetime
        timezone_str: IANA timezone name

    Returns:
        e.g. "Jan 10, 2025 at 04:00 PM PST"
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    try:
        tz = pytz.timezone(timezone_str)
    except pytz.UnknownTimeZoneError:
        tz = pytz.utc
    local = value.astimezone(tz)
    return local.strftime("%b %d, %Y at %I:%M %p %Z")


def _lines(*parts: Optional[str]) -> str:
    return "\n".join(p for p in parts if p is not None)


def assigned_message(worker_name: str, item, tz: str) -> Tuple[str, str]:
    body = _lines(
        f"Hello {worker_name},",
        "",
        "You have been assigned a new task:",
        "",
        f"Task: {item.task}",
        f"Description: {item.description}" if item.description else None,
        f"Instructions: {item.instructions}",
        f"Deadline: {format_when(item.deadline, tz)}",
        "",
        "Please log into TaskPilot to view and complete this task.",
        "",
        SIGNATURE,
    )
    return "New Task Assigned - TaskPilot", body


def submitted_message(admin_name: str, worker_name: str, item, tz: str) -> Tuple[str, str]:
    body = _lines(
        f"Hello {admin_name},",
        "",
        f"{worker_name} has submitted work for review:",
        "",
        f"Task: {item.task}",
        f"Description: {item.description}" if item.description else None,
        f"Worker Notes: {item.explanation}",
        f"Work Link: {item.work_link}" if item.work_link else None,
        f"Submitted: {format_when(item.submitted_at, tz)}" if item.submitted_at else None,
        "",
        "Please log into TaskPilot to review this submission.",
        "",
        SIGNATURE,
    )
    return "Work Submitted for Review - TaskPilot", body


def approved_message(worker_name: str, reviewer_name: str, item, tz: str) -> Tuple[str, str]:
    body = _lines(
        f"Hello {worker_name},",
        "",
        "Great news! Your work has been approved:",
        "",
        f"Task: {item.task}",
        f"Description: {item.description}" if item.description else None,
        f"Reviewed by: {reviewer_name}",
        f"Review Notes: {item.review_notes}" if item.review_notes else None,
        f"Approved on: {format_when(item.reviewed_at, tz)}" if item.reviewed_at else None,
        "",
        "Congratulations on completing this task successfully!",
        "",
        SIGNATURE,
    )
    return "Work Approved - TaskPilot", body


def rejected_message(worker_name: str, reviewer_name: str, item, tz: str) -> Tuple[str, str]:
    body = _lines(
        f"Hello {worker_name},",
        "",
        "Your submitted work requires revision:",
        "",
        f"Task: {item.task}",
        f"Description: {item.description}" if item.description else None,
        f"Original Deadline: {format_when(item.deadline, tz)}",
        f"Reviewed by: {reviewer_name}",
        "",
        "Feedback from Admin:",
        item.review_notes,
        "",
        "Please log into TaskPilot to view the feedback and resubmit your work "
        "after making the necessary revisions.",
        "",
        SIGNATURE,
    )
    return "Work Requires Revision - TaskPilot", body
