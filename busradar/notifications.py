"""Notification helpers for delivering scan events by e-mail."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Callable, Iterable, List, Optional, Protocol

from .errors import NotificationError
from .models import Event, EventKind, MonitorConfig

logger = logging.getLogger(__name__)

CURRENCY = "₹"
ROUTE_SUBJECT = "Bus Alert: {route_name}"
AGGREGATE_SUBJECT = "Bus Fare/Seat Alert!"

SMTP_SERVICES = {
    "gmail": ("smtp.gmail.com", 587),
    "outlook": ("smtp-mail.outlook.com", 587),
    "hotmail": ("smtp-mail.outlook.com", 587),
    "yahoo": ("smtp.mail.yahoo.com", 587),
    "icloud": ("smtp.mail.me.com", 587),
}


class Notifier(Protocol):
    """Protocol defining the notifier contract."""

    def send(self, recipient: str, subject: str, body: str) -> None:
        ...


@dataclass
class EmailNotifier:
    """Send plain-text mail through an SMTP server using STARTTLS."""

    sender_email: str
    sender_password: str
    host: str
    port: int = 587
    timeout: int = 30

    def send(self, recipient: str, subject: str, body: str) -> None:
        message = MIMEText(body, "plain", "utf-8")
        message["From"] = self.sender_email
        message["To"] = recipient
        message["Subject"] = subject
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.sender_email, self.sender_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"failed to send mail to {recipient}: {exc}") from exc


def build_notifier(config: MonitorConfig) -> EmailNotifier | None:
    """Construct an e-mail notifier when credentials are configured."""
    if not config.has_credentials:
        return None

    host, port = SMTP_SERVICES.get(
        (config.email_service or "gmail").lower(), SMTP_SERVICES["gmail"]
    )
    if config.smtp_host:
        host = config.smtp_host
    if config.smtp_port:
        port = config.smtp_port
    return EmailNotifier(
        sender_email=config.sender_email,
        sender_password=config.sender_password,
        host=host,
        port=port,
    )


class NotificationDispatcher:
    """Resolves recipients and delivers messages without ever raising."""

    def __init__(
        self,
        config: MonitorConfig,
        notifier_factory: Callable[[MonitorConfig], Optional[Notifier]] = build_notifier,
    ):
        self.config = config
        self.notifier = notifier_factory(config)

    def resolve_recipient(self, recipient_override: str | None) -> str | None:
        return (
            recipient_override
            or self.config.notification_email
            or self.config.sender_email
        )

    def notify(self, recipient_override: str | None, subject: str, body: str) -> bool:
        if self.notifier is None:
            logger.info("Email configuration missing. Skipping notification %r.", subject)
            return False

        recipient = self.resolve_recipient(recipient_override)
        if not recipient:
            logger.warning("No recipient resolved for %r; skipping", subject)
            return False

        try:
            self.notifier.send(recipient, subject, body)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to deliver notification to %s", recipient)
            return False
        logger.info("Email sent to %s", recipient)
        return True


def format_event(event: Event) -> str:
    """Render an event as a single human-readable line."""
    if event.kind is EventKind.PRICE_DROP:
        return (
            f"PRICE DROP: {event.operator_name} on {event.route_name} is now "
            f"{CURRENCY}{event.new_price} (was {CURRENCY}{event.old_price})"
        )
    if event.kind is EventKind.SEATS_AVAILABLE:
        return (
            f"SEATS AVAILABLE: {event.operator_name} on {event.route_name} "
            f"now has {event.seats}"
        )
    return (
        f"NEW BUS: {event.operator_name} found on {event.route_name} "
        f"for {CURRENCY}{event.price}"
    )


def format_events(events: Iterable[Event]) -> List[str]:
    return [format_event(event) for event in events]


__all__ = [
    "EmailNotifier",
    "NotificationDispatcher",
    "Notifier",
    "build_notifier",
    "format_event",
    "format_events",
]
