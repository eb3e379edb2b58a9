"""
Configuration loading for the automation core.

This module provides a Settings class that loads configuration data
from a YAML file located on disk and allows overrides via environment
variables. Environment variables take precedence over values defined
in the YAML configuration. See ``config/lookingglass_config.yaml`` for
a sample file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class MqttConfig:
    """Broker connection used by ``mqtt_publish`` and ``mqtt_subscribe`` actions."""
    enabled: bool = True
    host: str = "localhost"
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    publish_timeout_sec: float = 5.0


@dataclass
class EventBusConfig:
    """Sizing of the event history and the ingest queue."""
    max_events: int = 1000
    queue_size: int = 1000
    enqueue_timeout_sec: float = 5.0


@dataclass
class ActionsConfig:
    """
    Limits applied by the built-in actions.

    Attributes
    ----------
    http_timeout_sec: float
        Default timeout for ``http_request`` and webhook deliveries.
    max_delay_ms: int
        Upper bound for the ``delay`` action so a rule cannot stall the event path.
    smtp_timeout_sec: float
        Timeout for SMTP connections made by email notifications.
    """
    http_timeout_sec: float = 10.0
    max_delay_ms: int = 30000
    smtp_timeout_sec: float = 5.0


@dataclass
class NotificationConfig:
    """Delivery settings for the ``send_notification`` channels."""
    webhook_urls: List[str] = field(default_factory=list)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: Optional[str] = None
    smtp_to: List[str] = field(default_factory=list)
    smtp_starttls: bool = True
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    sms_webhook_url: Optional[str] = None
    sms_to: List[str] = field(default_factory=list)
    slack_webhook_url: Optional[str] = None
    slack_channel: Optional[str] = None


@dataclass
class Settings:
    """
    Application settings loaded from YAML and environment variables.

    ``rules`` and ``flows`` hold raw definitions that the orchestrator
    registers at startup.
    """

    mqtt: MqttConfig = field(default_factory=MqttConfig)
    event_bus: EventBusConfig = field(default_factory=EventBusConfig)
    actions: ActionsConfig = field(default_factory=ActionsConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None
    rules: List[Dict[str, Any]] = field(default_factory=list)
    flows: List[Dict[str, Any]] = field(default_factory=list)


def _load_yaml_file(config_path: Path) -> dict:
    """Load a YAML configuration file and return a dictionary."""
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file {config_path!s} not found")
    with config_path.open('r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def _split_csv(raw: Optional[str]) -> Optional[List[str]]:
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def _as_bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def load_settings(config_path: str) -> Settings:
    """
    Load settings from a YAML file and environment variables.

    Environment variable overrides:

    - ``MQTT_BROKER_HOST`` / ``MQTT_BROKER_PORT`` override the broker address
    - ``MQTT_USERNAME`` / ``MQTT_PASSWORD`` provide broker credentials
    - ``MQTT_ENABLED`` turns the broker connection off (``false``)
    - ``MQTT_PUBLISH_TIMEOUT_SEC`` bounds the wait for a broker publish
    - ``LG_LOG_LEVEL`` / ``LG_LOG_FILE`` override logging
    - ``LG_HTTP_TIMEOUT_SEC`` overrides the outbound HTTP timeout
    - ``NOTIFY_WEBHOOK_URLS`` is a comma separated list of webhook targets
    - ``SMTP_HOST``, ``SMTP_PORT``, ``SMTP_USER``, ``SMTP_PASSWORD``,
      ``SMTP_FROM``, ``SMTP_TO`` configure email delivery
    - ``TELEGRAM_BOT_TOKEN`` / ``TELEGRAM_CHAT_ID`` configure Telegram delivery
    - ``SMS_WEBHOOK_URL`` / ``SMS_TO`` configure the SMS gateway
    - ``SLACK_WEBHOOK_URL`` / ``SLACK_CHANNEL`` configure Slack delivery

    Parameters
    ----------
    config_path: str
        Path to the YAML configuration file.

    Returns
    -------
    Settings
        A Settings instance with configuration and environment overrides applied.
    """
    data = _load_yaml_file(Path(config_path))

    mqtt_data = data.get('mqtt', {}) or {}
    mqtt_cfg = MqttConfig(
        enabled=_as_bool(os.getenv('MQTT_ENABLED', mqtt_data.get('enabled')), True),
        host=os.getenv('MQTT_BROKER_HOST', mqtt_data.get('host', 'localhost')),
        port=int(os.getenv('MQTT_BROKER_PORT', mqtt_data.get('port', 1883))),
        username=os.getenv('MQTT_USERNAME', mqtt_data.get('username')),
        password=os.getenv('MQTT_PASSWORD', mqtt_data.get('password')),
        client_id=mqtt_data.get('client_id'),
        publish_timeout_sec=float(os.getenv('MQTT_PUBLISH_TIMEOUT_SEC', mqtt_data.get('publish_timeout_sec', 5.0))),
    )

    bus_data = data.get('event_bus', {}) or {}
    bus_cfg = EventBusConfig(
        max_events=int(bus_data.get('max_events', 1000)),
        queue_size=int(bus_data.get('queue_size', 1000)),
        enqueue_timeout_sec=float(bus_data.get('enqueue_timeout_sec', 5.0)),
    )

    actions_data = data.get('actions', {}) or {}
    actions_cfg = ActionsConfig(
        http_timeout_sec=float(os.getenv('LG_HTTP_TIMEOUT_SEC', actions_data.get('http_timeout_sec', 10.0))),
        max_delay_ms=int(actions_data.get('max_delay_ms', 30000)),
        smtp_timeout_sec=float(actions_data.get('smtp_timeout_sec', 5.0)),
    )

    notify_data = data.get('notifications', {}) or {}
    smtp_data = notify_data.get('smtp', {}) or {}
    telegram_data = notify_data.get('telegram', {}) or {}
    sms_data = notify_data.get('sms', {}) or {}
    slack_data = notify_data.get('slack', {}) or {}
    notify_cfg = NotificationConfig(
        webhook_urls=_split_csv(os.getenv('NOTIFY_WEBHOOK_URLS')) or list(notify_data.get('webhook_urls', []) or []),
        smtp_host=os.getenv('SMTP_HOST', smtp_data.get('host')),
        smtp_port=int(os.getenv('SMTP_PORT', smtp_data.get('port', 587))),
        smtp_user=os.getenv('SMTP_USER', smtp_data.get('user')),
        smtp_password=os.getenv('SMTP_PASSWORD', smtp_data.get('password')),
        smtp_from=os.getenv('SMTP_FROM', smtp_data.get('from')),
        smtp_to=_split_csv(os.getenv('SMTP_TO')) or list(smtp_data.get('to', []) or []),
        smtp_starttls=_as_bool(os.getenv('SMTP_STARTTLS', smtp_data.get('starttls')), True),
        telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN', telegram_data.get('bot_token')),
        telegram_chat_id=os.getenv('TELEGRAM_CHAT_ID', telegram_data.get('chat_id')),
        sms_webhook_url=os.getenv('SMS_WEBHOOK_URL', sms_data.get('webhook_url')),
        sms_to=_split_csv(os.getenv('SMS_TO')) or list(sms_data.get('to', []) or []),
        slack_webhook_url=os.getenv('SLACK_WEBHOOK_URL', slack_data.get('webhook_url')),
        slack_channel=os.getenv('SLACK_CHANNEL', slack_data.get('channel')),
    )

    logging_data = data.get('logging', {}) or {}
    return Settings(
        mqtt=mqtt_cfg,
        event_bus=bus_cfg,
        actions=actions_cfg,
        notifications=notify_cfg,
        log_level=os.getenv('LG_LOG_LEVEL', logging_data.get('level', 'INFO')),
        log_file=os.getenv('LG_LOG_FILE', logging_data.get('file')),
        rules=list(data.get('rules', []) or []),
        flows=list(data.get('flows', []) or []),
    )


__all__ = [
    'MqttConfig',
    'EventBusConfig',
    'ActionsConfig',
    'NotificationConfig',
    'Settings',
    'load_settings',
]
