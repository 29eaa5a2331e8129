"""Booking notifications.

Notifications are best effort: a failed send is logged and never undoes the
status change that triggered it.
"""

from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

from fixera_platform.domain.enums import NotificationEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class Notifier(Protocol):
    async def send(
        self,
        event: NotificationEvent,
        recipient: Recipient,
        payload: dict[str, Any],
    ) -> bool: ...


class LoggingNotifier:
    """Default notifier: writes each notification to the log."""

    async def send(self, event: NotificationEvent, recipient: Recipient, payload: dict[str, Any]) -> bool:
        logger.info(
            "Notification %s -> user %s (booking=%s)",
            event.value,
            recipient.user_id,
            payload.get("booking_id"),
        )
        return True


SUBJECTS: dict[NotificationEvent, str] = {
    NotificationEvent.QUOTE_SUBMITTED: "You received a quote",
    NotificationEvent.QUOTE_ACCEPTED: "Your quote was accepted",
    NotificationEvent.QUOTE_REJECTED: "Your quote was declined",
    NotificationEvent.BOOKING_CONFIRMED: "Your booking is confirmed",
    NotificationEvent.BOOKING_CANCELLED: "A booking was cancelled",
    NotificationEvent.WORK_STARTED: "Work on your booking has started",
    NotificationEvent.BOOKING_COMPLETED: "Your booking is complete",
    NotificationEvent.DISPUTE_RAISED: "A dispute was raised on your booking",
    NotificationEvent.REFUND_ISSUED: "A refund was issued",
    NotificationEvent.SCHEDULE_CONFLICT: "Please choose a new start for your booking",
}


def _build_html(event: NotificationEvent, recipient: Recipient, payload: dict[str, Any], frontend_url: str) -> str:
    name = html.escape(recipient.name or "there")
    booking_id = payload.get("booking_id", "")
    link = f"{frontend_url.rstrip('/')}/bookings/{booking_id}"
    lines = "".join(
        f"<li><strong>{html.escape(str(k))}</strong>: {html.escape(str(v))}</li>"
        for k, v in payload.items()
        if k != "booking_id" and v is not None
    )
    return f"""
    <div style="font-family: sans-serif; max-width: 560px;">
      <p>Hi {name},</p>
      <p>{html.escape(SUBJECTS.get(event, event.value))}.</p>
      <ul>{lines}</ul>
      <p><a href="{link}">View booking</a></p>
    </div>
    """


class EmailNotifier:
    """SendGrid notifier. The SendGrid client is synchronous; sends run in a thread."""

    def __init__(self, api_key: str, from_email: str, frontend_url: str = "http://localhost:3000"):
        self.api_key = api_key
        self.from_email = from_email
        self.frontend_url = frontend_url

    def _send_mail(self, mail: Mail) -> bool:
        client = sendgrid.SendGridAPIClient(api_key=self.api_key)
        response = client.send(mail)
        if response.status_code in (200, 201, 202):
            return True
        logger.error("SendGrid returned status %s: %s", response.status_code, response.body)
        return False

    async def send(self, event: NotificationEvent, recipient: Recipient, payload: dict[str, Any]) -> bool:
        if not self.api_key:
            logger.warning("SENDGRID_API_KEY not set, skipping %s notification", event.value)
            return False
        if not recipient.email:
            logger.warning("User %s has no email, skipping %s notification", recipient.user_id, event.value)
            return False

        mail = Mail(
            from_email=Email(self.from_email, "Fixera"),
            to_emails=To(recipient.email),
            subject=SUBJECTS.get(event, event.value),
            html_content=HtmlContent(_build_html(event, recipient, payload, self.frontend_url)),
        )
        result = await asyncio.to_thread(self._send_mail, mail)
        if result:
            logger.info("Notification %s emailed to %s", event.value, recipient.email)
        return result


def build_notifier(settings) -> Notifier:
    """Email when SendGrid is configured, otherwise log."""
    if settings.sendgrid_api_key:
        return EmailNotifier(
            settings.sendgrid_api_key,
            settings.notification_from_email,
            settings.frontend_url,
        )
    return LoggingNotifier()
