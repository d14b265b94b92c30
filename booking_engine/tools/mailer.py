"""
Booking emails: template rendering and the notification collaborator.

Templates use ``{{token}}`` placeholders over a fixed set of tokens. This
is plain substitution, not a template language: there are no loops,
conditionals or filters, and tokens outside the set render as empty text.

``InMemoryMailer`` is the mock outbox. In production this would hand the
message to a transactional email provider (SES, Postmark, SMTP relay).
"""

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from booking_engine.errors import NotificationError

logger = logging.getLogger(__name__)

TEMPLATE_TOKENS: frozenset[str] = frozenset({
    "name", "email", "phone", "service", "date", "time", "timezone",
    "brandName", "brandUrl", "calendarUrl", "reason",
})

_TOKEN_RE = re.compile(r"\{\{(\w+)\}\}")

DATE_FORMAT = "%A, %d %B %Y"
TIME_FORMAT = "%H:%M"
DEFAULT_BRAND_NAME = "our business"


class EmailKind(str, Enum):
    CONFIRMATION = "booking_confirmation"
    CANCELLATION = "booking_cancellation"
    REMINDER = "booking_reminder"


@dataclass(frozen=True)
class SendResult:
    sent: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class EmailMessage:
    kind: EmailKind
    to: str
    subject: str
    text: str
    html: str


class Mailer(Protocol):
    async def send(
        self, kind: EmailKind, to: str, subject: str, text: str, html_body: str
    ) -> SendResult: ...


class InMemoryMailer:
    """Mock mailer collecting messages in an outbox."""

    def __init__(self, fail_reason: Optional[str] = None) -> None:
        self.outbox: list[EmailMessage] = []
        self.fail_reason = fail_reason

    async def send(
        self, kind: EmailKind, to: str, subject: str, text: str, html_body: str
    ) -> SendResult:
        if self.fail_reason:
            logger.warning("Mail to %s not sent: %s", to, self.fail_reason)
            return SendResult(sent=False, reason=self.fail_reason)
        self.outbox.append(EmailMessage(kind, to, subject, text, html_body))
        logger.info("Mail queued: %s to %s", kind.value, to)
        return SendResult(sent=True)

    def reset(self) -> None:
        self.outbox.clear()


def render_template(template: str, context: dict[str, str]) -> str:
    """Replace ``{{token}}`` placeholders with values from ``context``.

    Examples:
        >>> render_template("Hi {{name}}{{unknown}}!", {"name": "Ana"})
        'Hi Ana!'
    """

    def _substitute(match: "re.Match[str]") -> str:
        token = match.group(1)
        if token not in TEMPLATE_TOKENS:
            return ""
        return context.get(token, "")

    return _TOKEN_RE.sub(_substitute, template)


def escape_context(context: dict[str, str]) -> dict[str, str]:
    """HTML-escape every value for use in HTML bodies."""
    return {key: html.escape(value, quote=True) for key, value in context.items()}


def build_email_context(
    *,
    name: str,
    email: str,
    phone: str,
    service: str,
    start_local: datetime,
    timezone_name: str,
    brand_name: str,
    brand_url: str,
    calendar_url: str = "",
    reason: str = "",
) -> dict[str, str]:
    """Assemble the closed token map for one message."""
    return {
        "name": name,
        "email": email,
        "phone": phone or "",
        "service": service,
        "date": start_local.strftime(DATE_FORMAT),
        "time": start_local.strftime(TIME_FORMAT),
        "timezone": timezone_name,
        "brandName": brand_name or DEFAULT_BRAND_NAME,
        "brandUrl": brand_url or "",
        "calendarUrl": calendar_url,
        "reason": reason or "",
    }


@dataclass(frozen=True)
class EmailTemplates:
    subject: str
    text: str
    html: str


DEFAULT_CONFIRMATION = EmailTemplates(
    subject="Your {{service}} booking on {{date}} at {{time}} with {{brandName}}",
    text=(
        "Hi {{name}},\n\n"
        "Your booking with {{brandName}} is confirmed.\n\n"
        "Service: {{service}}\n"
        "Date: {{date}}\n"
        "Time: {{time}} ({{timezone}})\n\n"
        "You can add this booking to your calendar using this link:\n"
        "{{calendarUrl}}\n\n"
        "If you need to reschedule, please contact us.\n\n"
        "Thank you!"
    ),
    html=(
        "<p>Hi {{name}},</p>"
        "<p>Your booking with <strong>{{brandName}}</strong> is confirmed.</p>"
        "<p><strong>Service:</strong> {{service}}<br>"
        "<strong>Date:</strong> {{date}}<br>"
        "<strong>Time:</strong> {{time}} ({{timezone}})</p>"
        '<p><a href="{{calendarUrl}}">Add to Google Calendar</a></p>'
        "<p>If you need to reschedule, please contact us.</p>"
        "<p>Thank you!</p>"
    ),
)

DEFAULT_CANCELLATION = EmailTemplates(
    subject=(
        "Your {{service}} booking on {{date}} at {{time}} "
        "with {{brandName}} has been cancelled"
    ),
    text=(
        "Hi {{name}},\n\n"
        "Your booking with {{brandName}} has been cancelled.\n\n"
        "Service: {{service}}\n"
        "Date: {{date}}\n"
        "Time: {{time}} ({{timezone}})\n\n"
        "Reason: {{reason}}\n\n"
        "If this was a mistake or you would like to reschedule, "
        "please contact us or book a new time.\n\n"
        "Thank you!"
    ),
    html=(
        "<p>Hi {{name}},</p>"
        "<p>Your booking with <strong>{{brandName}}</strong> has been "
        "<strong>cancelled</strong>.</p>"
        "<p><strong>Service:</strong> {{service}}<br>"
        "<strong>Date:</strong> {{date}}<br>"
        "<strong>Time:</strong> {{time}} ({{timezone}})</p>"
        "<p><strong>Reason:</strong> {{reason}}</p>"
        "<p>If this was a mistake or you would like to reschedule, "
        "please contact us or book a new time.</p>"
        "<p>Thank you!</p>"
    ),
)

DEFAULT_REMINDER = EmailTemplates(
    subject="Reminder: your {{service}} booking at {{time}} with {{brandName}}",
    text=(
        "Hi {{name}},\n\n"
        "This is a reminder from {{brandName}} for your {{service}} booking "
        "on {{date}} at {{time}} ({{timezone}}).\n\n"
        "If you need to reschedule, please contact us.\n\n"
        "See you soon!"
    ),
    html=(
        "<p>Hi {{name}},</p>"
        "<p>This is a reminder from <strong>{{brandName}}</strong> for your "
        "<strong>{{service}}</strong> booking on <strong>{{date}}</strong> at "
        "<strong>{{time}}</strong> ({{timezone}}).</p>"
        "<p>If you need to reschedule, please contact us.</p>"
        "<p>See you soon!</p>"
    ),
)


async def send_templated(
    mailer: Mailer,
    kind: EmailKind,
    to: str,
    templates: EmailTemplates,
    context: dict[str, str],
) -> SendResult:
    """Render subject/text with raw values, HTML with escaped values, and send.

    Raises:
        NotificationError: If the mailer itself raises.
    """
    subject = render_template(templates.subject, context)
    text = render_template(templates.text, context)
    html_body = render_template(templates.html, escape_context(context))
    try:
        result = await mailer.send(kind, to, subject, text, html_body)
    except Exception as exc:
        logger.error("Mailer raised while sending %s to %s: %s", kind.value, to, exc)
        raise NotificationError(f"Email delivery failed: {exc}", reason="internal_error") from exc
    if not result.sent:
        return SendResult(sent=False, reason=result.reason or "send_failed")
    return result
