"""
Notification delivery for recipe triggers.

A failed delivery never fails the run that caused it: fire_triggers()
records the outcome of every attempt and carries on.
"""

import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import requests

from datastash.errors import NotificationDeliveryError
from datastash.models import Diff, Trigger

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """Confirmation of a delivered message."""
    recipient: str
    channel: str
    detail: Optional[str] = None


class Notifier:
    """Delivers a rendered message to a recipient."""

    channel = 'none'

    def notify(self, recipient: str, subject: str, body: str) -> Delivery:
        """
        Deliver a message.

        Raises:
            NotificationDeliveryError: If the message could not be delivered
        """
        raise NotImplementedError


class LogNotifier(Notifier):
    """Writes notifications to the log instead of sending them."""

    channel = 'log'

    def notify(self, recipient, subject, body):
        logger.info(f"Notification for {recipient}: {subject}\n{body}")
        return Delivery(recipient=recipient, channel=self.channel)


class EmailNotifier(Notifier):
    """Sends notifications over SMTP."""

    channel = 'email'

    def __init__(
        self,
        host: str,
        sender: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: int = 30
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _build_message(self, recipient: str, subject: str, body: str) -> str:
        message = MIMEText(body, 'plain', 'utf-8')
        message['Subject'] = subject
        message['From'] = self.sender
        message['To'] = recipient
        return message.as_string()

    def notify(self, recipient, subject, body):
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, [recipient], self._build_message(recipient, subject, body))
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(f"Email to {recipient} failed: {e}") from e
        logger.info(f"Email sent to {recipient}: {subject}")
        return Delivery(recipient=recipient, channel=self.channel)


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to the recipient URL."""

    channel = 'webhook'

    def __init__(self, timeout: int = 10, headers: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.headers = headers or {}

    def notify(self, recipient, subject, body):
        try:
            response = requests.post(
                recipient,
                json={'subject': subject, 'body': body},
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationDeliveryError(f"Webhook {recipient} failed: {e}") from e
        return Delivery(recipient=recipient, channel=self.channel, detail=f"HTTP {response.status_code}")


class RoutingNotifier(Notifier):
    """
    Picks a notifier by recipient.

    http(s) URLs go to the webhook notifier; everything else is treated as
    an email address, falling back to the log when email isn't configured.
    """

    channel = 'route'

    def __init__(self, email: Optional[Notifier] = None, webhook: Optional[Notifier] = None,
                 fallback: Optional[Notifier] = None):
        self.email = email
        self.webhook = webhook or WebhookNotifier()
        self.fallback = fallback or LogNotifier()

    def notify(self, recipient, subject, body):
        if recipient.startswith(('http://', 'https://')):
            return self.webhook.notify(recipient, subject, body)
        return (self.email or self.fallback).notify(recipient, subject, body)


def condition_met(condition: str, diff: Diff) -> bool:
    """Whether a trigger condition holds for a diff."""
    if condition == 'always':
        return True
    if condition == 'added':
        return bool(diff.added)
    if condition == 'removed':
        return bool(diff.removed)
    return not diff.empty


def format_diff(name: str, diff: Diff) -> str:
    """Render a diff as a plain-text message body."""
    lines = [f"{name}: {len(diff.added)} added, {len(diff.removed)} removed", ""]
    for title, rows in (('Added', diff.added), ('Removed', diff.removed)):
        if not rows:
            continue
        lines.append(f"{title}:")
        for row in rows:
            lines.append("  " + ", ".join(f"{k}: {v}" for k, v in row.items()))
        lines.append("")
    return "\n".join(lines)


def fire_triggers(
    triggers: List[Trigger],
    diff: Diff,
    name: str,
    notifier: Notifier,
    log_prefix: str = ""
) -> List[Dict[str, Any]]:
    """
    Notify every trigger whose condition holds.

    Returns:
        One outcome per notified trigger: recipient, condition, delivered
        and a detail string (the error when delivery failed)
    """
    outcomes = []
    subject = f"{name}: {len(diff.added)} added, {len(diff.removed)} removed"
    body = format_diff(name, diff)

    for trigger in triggers:
        if not condition_met(trigger.condition, diff):
            continue
        outcome = {'recipient': trigger.recipient, 'condition': trigger.condition}
        try:
            delivery = notifier.notify(trigger.recipient, subject, body)
            outcome.update(delivered=True, channel=delivery.channel, detail=delivery.detail)
        except NotificationDeliveryError as e:
            logger.warning(f"{log_prefix}Notification to {trigger.recipient} failed: {e}")
            outcome.update(delivered=False, channel=None, detail=str(e))
        except Exception as e:
            logger.error(f"{log_prefix}Notifier error for {trigger.recipient}: {e}", exc_info=True)
            outcome.update(delivered=False, channel=None, detail=str(e))
        outcomes.append(outcome)

    return outcomes
