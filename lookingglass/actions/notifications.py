"""
Notification providers for the ``send_notification`` and ``send_email`` actions.

Each channel (log, webhook, email, telegram, sms, slack) is served by one
provider. Providers raise on delivery failure; ``NotificationService``
turns those into per-channel delivery results so one dead channel does
not hide the others.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Optional

import requests

from ..config import NotificationConfig


@dataclass
class Notification:
    message: str
    priority: str = "normal"
    subject: Optional[str] = None
    source: Optional[str] = None
    to: List[str] = field(default_factory=list)
    slack_channel: Optional[str] = None
    attachments: Optional[List[Dict[str, Any]]] = None


class NotificationProvider:
    channel: str = ""

    def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LogNotificationProvider(NotificationProvider):
    channel = "log"

    def send(self, notification: Notification) -> None:
        logging.getLogger("notifications").info(
            "Notification priority=%s source=%s message=%s",
            notification.priority,
            notification.source,
            notification.message,
        )


class WebhookNotificationProvider(NotificationProvider):
    channel = "webhook"

    def __init__(self, urls: Iterable[str], timeout: float = 3.0) -> None:
        self.urls = [u for u in urls if u]
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        if not self.urls:
            raise RuntimeError("No webhook URLs configured")
        payload = {
            "message": notification.message,
            "priority": notification.priority,
            "subject": notification.subject,
            "source": notification.source,
        }
        failures: List[str] = []
        for url in self.urls:
            try:
                resp = requests.post(url, json=payload, timeout=self.timeout)
                resp.raise_for_status()
            except requests.RequestException as exc:
                logging.getLogger("notifications").warning("Webhook notify failed (%s): %s", url, exc)
                failures.append(url)
        if len(failures) == len(self.urls):
            raise RuntimeError(f"All webhook deliveries failed: {', '.join(failures)}")


class SmtpEmailProvider(NotificationProvider):
    channel = "email"

    def __init__(self, config: NotificationConfig, timeout: float = 5.0) -> None:
        self.config = config
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.config.smtp_host)

    def send(self, notification: Notification) -> None:
        subject = notification.subject or f"Looking Glass alert ({notification.priority})"
        self.send_email(self.config.smtp_to, subject, notification.message)

    def send_email(self, to: Iterable[str], subject: str, body: str) -> None:
        if not self.config.smtp_host:
            raise RuntimeError("SMTP is not configured")
        recipients = [addr.strip() for addr in to if addr and addr.strip()]
        if not recipients:
            raise RuntimeError("No email recipients")
        sender = self.config.smtp_from or self.config.smtp_user or "lookingglass@localhost"
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = ", ".join(recipients)
        msg.set_content(body)
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=self.timeout) as server:
            server.ehlo()
            if self.config.smtp_starttls:
                server.starttls()
                server.ehlo()
            if self.config.smtp_user and self.config.smtp_password:
                server.login(self.config.smtp_user, self.config.smtp_password)
            server.send_message(msg)


class TelegramNotificationProvider(NotificationProvider):
    channel = "telegram"
    api_base = "https://api.telegram.org"

    def __init__(self, bot_token: Optional[str], chat_id: Optional[str], timeout: float = 5.0) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        if not self.bot_token or not self.chat_id:
            raise RuntimeError("Telegram bot token or chat id missing")
        resp = requests.post(
            f"{self.api_base}/bot{self.bot_token}/sendMessage",
            json={"chat_id": self.chat_id, "text": notification.message, "parse_mode": "HTML"},
            timeout=self.timeout,
        )
        resp.raise_for_status()


class SmsGatewayProvider(NotificationProvider):
    """Posts ``{to, message}`` to an HTTP SMS gateway, one request per recipient."""

    channel = "sms"

    def __init__(self, url: Optional[str], default_to: Iterable[str] = (), timeout: float = 5.0) -> None:
        self.url = url
        self.default_to = [n for n in default_to if n]
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        if not self.url:
            raise RuntimeError("SMS gateway URL not configured")
        recipients = [n for n in notification.to if n] or self.default_to
        if not recipients:
            raise RuntimeError("No SMS recipients")
        failures: List[str] = []
        for number in recipients:
            payload = {"to": number, "message": notification.message, "priority": notification.priority}
            try:
                resp = requests.post(self.url, json=payload, timeout=self.timeout)
                resp.raise_for_status()
            except requests.RequestException as exc:
                logging.getLogger("notifications").warning("SMS notify failed (%s): %s", number, exc)
                failures.append(number)
        if len(failures) == len(recipients):
            raise RuntimeError(f"All SMS deliveries failed: {', '.join(failures)}")


class SlackNotificationProvider(NotificationProvider):
    channel = "slack"

    def __init__(self, webhook_url: Optional[str], default_channel: Optional[str] = None, timeout: float = 5.0) -> None:
        self.webhook_url = webhook_url
        self.default_channel = default_channel
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        if not self.webhook_url:
            raise RuntimeError("Slack webhook URL not configured")
        payload: Dict[str, Any] = {"text": notification.message}
        room = notification.slack_channel or self.default_channel
        if room:
            payload["channel"] = room
        if notification.attachments:
            payload["attachments"] = notification.attachments
        resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        resp.raise_for_status()


class NotificationService:
    """Routes a notification to the providers of the requested channels."""

    def __init__(self, providers: Iterable[NotificationProvider]) -> None:
        self.providers: Dict[str, NotificationProvider] = {p.channel: p for p in providers}

    def dispatch(self, notification: Notification, channels: Iterable[str]) -> Dict[str, str]:
        results: Dict[str, str] = {}
        for channel in channels:
            provider = self.providers.get(channel)
            if provider is None:
                results[channel] = "unsupported"
                continue
            try:
                provider.send(notification)
                results[channel] = "sent"
            except Exception as exc:
                logging.getLogger("notifications").warning("Notify via %s failed: %s", channel, exc)
                results[channel] = f"failed: {exc}"
        return results


def build_notification_service(config: NotificationConfig, *, http_timeout: float = 3.0, smtp_timeout: float = 5.0) -> NotificationService:
    return NotificationService(
        [
            LogNotificationProvider(),
            WebhookNotificationProvider(config.webhook_urls, timeout=http_timeout),
            SmtpEmailProvider(config, timeout=smtp_timeout),
            TelegramNotificationProvider(config.telegram_bot_token, config.telegram_chat_id, timeout=http_timeout),
            SmsGatewayProvider(config.sms_webhook_url, config.sms_to, timeout=http_timeout),
            SlackNotificationProvider(config.slack_webhook_url, config.slack_channel, timeout=http_timeout),
        ]
    )


__all__ = [
    "Notification",
    "NotificationProvider",
    "LogNotificationProvider",
    "WebhookNotificationProvider",
    "SmtpEmailProvider",
    "TelegramNotificationProvider",
    "SmsGatewayProvider",
    "SlackNotificationProvider",
    "NotificationService",
    "build_notification_service",
]
