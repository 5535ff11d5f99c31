"""Outbound email notifications for guests and restaurant staff."""

import asyncio
import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Protocol

from tablenow.config import get_config
from tablenow.errors import NotificationError

logger = logging.getLogger(__name__)


class GuestTemplate(str, Enum):
    """Guest-facing email templates."""

    BOOKING_CONFIRMATION = "booking_confirmation"
    BOOKING_UPDATED = "booking_updated"
    BOOKING_CANCELLED = "booking_cancelled"


GUEST_SUBJECTS = {
    GuestTemplate.BOOKING_CONFIRMATION: "Booking Confirmation - {restaurant_name}",
    GuestTemplate.BOOKING_UPDATED: "Booking Updated - {restaurant_name}",
    GuestTemplate.BOOKING_CANCELLED: "Booking Cancelled - {restaurant_name}",
}

GUEST_BODIES = {
    GuestTemplate.BOOKING_CONFIRMATION: (
        "Hi {guest_name},\n\n"
        "Your table at {restaurant_name} is confirmed.\n\n"
        "Date: {date}\nTime: {time}\nParty size: {party_size}\n"
        "Confirmation number: {confirmation_code}\n\n"
        "We look forward to seeing you."
    ),
    GuestTemplate.BOOKING_UPDATED: (
        "Hi {guest_name},\n\n"
        "Your booking at {restaurant_name} has been updated.\n\n"
        "Date: {date}\nTime: {time}\nParty size: {party_size}\n"
        "Confirmation number: {confirmation_code}"
    ),
    GuestTemplate.BOOKING_CANCELLED: (
        "Hi {guest_name},\n\n"
        "Your booking {confirmation_code} at {restaurant_name} on {date} at {time} "
        "has been cancelled."
    ),
}


class Notifier(Protocol):
    """Notification operations used by the fan-out coordinator."""

    async def notify_guest(self, template: GuestTemplate, data: dict[str, Any]) -> None: ...

    async def notify_tenant(self, subject: str, data: dict[str, Any]) -> None: ...


def format_booking_summary(data: dict[str, Any]) -> str:
    """Render the booking fields present in ``data`` as plain text lines."""
    labels = [
        ("guest_name", "Guest"),
        ("guest_email", "Email"),
        ("guest_phone", "Phone"),
        ("date", "Date"),
        ("time", "Time"),
        ("party_size", "Party Size"),
        ("special_requests", "Special Requests"),
        ("confirmation_code", "Confirmation #"),
        ("source", "Source"),
    ]
    return "\n".join(
        f"{label}: {data[key]}" for key, label in labels if data.get(key) not in (None, "")
    )


class SMTPEmailService:
    """Sends plain-text email through SMTP.

    ``smtplib`` is blocking, so each message is sent from a worker thread.
    """

    def __init__(self) -> None:
        """Initialize the email service."""
        self.config = get_config()
        if not self.config.has_smtp_config():
            logger.warning("SMTP not configured - notifications will fail")

    def is_configured(self) -> bool:
        return self.config.has_smtp_config()

    def _send_blocking(self, message: MIMEText) -> None:
        cfg = self.config
        if cfg.smtp_port == 465:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(cfg.smtp_host, cfg.smtp_port, context=context, timeout=20) as server:
                server.login(cfg.smtp_user, cfg.smtp_password)
                server.send_message(message)
        else:
            with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=20) as server:
                server.starttls(context=ssl.create_default_context())
                server.login(cfg.smtp_user, cfg.smtp_password)
                server.send_message(message)

    async def send(self, to: str, subject: str, body: str) -> None:
        """Send one email.

        Raises:
            NotificationError: If SMTP is not configured or delivery fails
        """
        if not self.is_configured():
            msg = "SMTP is not configured"
            raise NotificationError(msg)

        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = self.config.email_from
        message["To"] = to

        try:
            await asyncio.to_thread(self._send_blocking, message)
        except (smtplib.SMTPException, OSError) as e:
            msg = f"Failed to send email to {to}: {e}"
            raise NotificationError(msg) from e

        logger.info(f"Email sent to {to}: {subject}")

    async def notify_guest(self, template: GuestTemplate, data: dict[str, Any]) -> None:
        """Send a guest template to ``data["guest_email"]``."""
        to = data.get("guest_email")
        if not to:
            msg = "Guest has no email address"
            raise NotificationError(msg)

        values = {"restaurant_name": "Restaurant", **data}
        subject = GUEST_SUBJECTS[template].format(**values)
        body = GUEST_BODIES[template].format(**values)
        await self.send(to, subject, body)

    async def notify_tenant(self, subject: str, data: dict[str, Any]) -> None:
        """Send a staff alert to ``data["tenant_email"]``."""
        to = data.get("tenant_email")
        if not to:
            msg = "Restaurant has no notification email"
            raise NotificationError(msg)

        body = f"{data.get('message', subject)}\n\n{format_booking_summary(data)}"
        await self.send(to, f"TableNow Alert: {subject}", body)
