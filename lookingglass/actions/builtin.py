"""
Built-in actions.

Every action receives its parameters with template tokens already
resolved plus the ``ActionContext``. Actions raise on failure; the
framework wraps the error and the caller decides whether it is fatal.
Actions that talk to the outside world bound their own wait time.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import requests

from ..config import Settings
from ..core.predicates import evaluate_condition
from ..core.templates import resolve_template
from ..events import topics
from ..models.base import utc_now_iso
from .context import ActionContext
from .notifications import Notification, NotificationService, SmtpEmailProvider, build_notification_service

if TYPE_CHECKING:
    from .framework import ActionFramework

_logger = logging.getLogger("actions")


def _require(params: Mapping[str, Any], *names: str, action: str) -> None:
    missing = [name for name in names if params.get(name) in (None, "")]
    if missing:
        raise ValueError(f"{action} requires {', '.join(missing)}")


class BaseAction:
    """Common shape of a built-in action: a named callable."""

    name: str = ""

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        raise NotImplementedError


class MqttPublishAction(BaseAction):
    name = "mqtt_publish"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "topic", action=self.name)
        topic = params["topic"]
        payload = params.get("payload", params.get("message"))
        qos = int(params.get("qos", 0))
        retain = bool(params.get("retain", False))
        if context.broker is not None:
            return context.broker.publish(topic, payload, qos=qos, retain=retain)
        connector = context.connectors.get("mqtt")
        if connector is None:
            raise RuntimeError("MQTT broker not available")
        return connector.execute("mqtt:publish", "publish", {"topic": topic, "message": payload, "qos": qos, "retain": retain})


class MqttSubscribeAction(BaseAction):
    name = "mqtt_subscribe"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "topic", action=self.name)
        topic = params["topic"]
        qos = int(params.get("qos", 0))
        if context.broker is not None and hasattr(context.broker, "subscribe"):
            return context.broker.subscribe(topic, qos=qos)
        connector = context.connectors.get("mqtt")
        if connector is None:
            raise RuntimeError("MQTT broker not available")
        return connector.execute("mqtt:subscribe", "subscribe", {"topic": topic, "qos": qos})


class LogEventAction(BaseAction):
    name = "log_event"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        level_name = str(params.get("level", "info")).upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            level = logging.INFO
        rule_name = context.rule.name if context.rule else None
        message = params.get("message") or f"Rule execution: {rule_name}"
        data = dict(params.get("data") or {})
        data["rule_id"] = context.rule.id if context.rule else None
        data["event_id"] = context.event.id if context.event else None
        _logger.log(level, "%s %s", message, data)
        return {"logged": True, "level": level_name.lower(), "message": message, "data": data, "timestamp": utc_now_iso()}


class SendNotificationAction(BaseAction):
    name = "send_notification"

    def __init__(self, service: NotificationService) -> None:
        self.service = service

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "message", action=self.name)
        channels = params.get("channels") or ["log"]
        if isinstance(channels, str):
            channels = [channels]
        source = context.event.source if context.event else "rule-engine"
        notification = Notification(
            message=str(params["message"]),
            priority=str(params.get("priority", "normal")),
            subject=params.get("subject"),
            source=source,
        )
        deliveries = self.service.dispatch(notification, channels)
        record = {
            "id": f"notification-{uuid.uuid4().hex[:12]}",
            "message": notification.message,
            "priority": notification.priority,
            "channels": list(channels),
            "deliveries": deliveries,
            "source": source,
            "timestamp": utc_now_iso(),
        }
        context.notify(topics.NOTIFICATION, record)
        if deliveries and not any(status == "sent" for status in deliveries.values()):
            raise RuntimeError(f"Notification not delivered on any channel: {deliveries}")
        return record


def _deliver(service: NotificationService, notification: Notification, channel: str) -> None:
    status = service.dispatch(notification, [channel]).get(channel)
    if status != "sent":
        raise RuntimeError(f"{channel} delivery {status}")


class SendSmsAction(BaseAction):
    name = "send_sms"

    def __init__(self, service: NotificationService) -> None:
        self.service = service

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "to", "message", action=self.name)
        to = params["to"]
        recipients = [to] if isinstance(to, str) else list(to)
        source = context.event.source if context.event else "rule-engine"
        _deliver(self.service, Notification(message=str(params["message"]), to=recipients, source=source), "sms")
        return {"sent": True, "to": recipients, "timestamp": utc_now_iso()}


class SlackNotifyAction(BaseAction):
    name = "slack_notify"

    def __init__(self, service: NotificationService) -> None:
        self.service = service

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "message", action=self.name)
        notification = Notification(
            message=str(params["message"]),
            source=context.event.source if context.event else "rule-engine",
            slack_channel=params.get("channel"),
            attachments=params.get("attachments"),
        )
        _deliver(self.service, notification, "slack")
        return {"sent": True, "channel": notification.slack_channel, "timestamp": utc_now_iso()}


class SendEmailAction(BaseAction):
    name = "send_email"

    def __init__(self, provider: SmtpEmailProvider) -> None:
        self.provider = provider

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "to", "subject", "body", action=self.name)
        to = params["to"]
        recipients = [to] if isinstance(to, str) else list(to)
        self.provider.send_email(recipients, str(params["subject"]), str(params["body"]))
        return {"sent": True, "to": recipients, "subject": params["subject"], "timestamp": utc_now_iso()}


class ConnectorExecuteAction(BaseAction):
    name = "connector_execute"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "connector_id", "capability", "operation", action=self.name)
        connector = context.connectors.get(params["connector_id"])
        if connector is None:
            raise LookupError(f"Connector not found: {params['connector_id']}")
        return connector.execute(params["capability"], params["operation"], dict(params.get("parameters") or {}))


class ConnectorConnectAction(BaseAction):
    name = "connector_connect"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "connector_id", action=self.name)
        connector = context.connectors.get(params["connector_id"])
        if connector is None:
            raise LookupError(f"Connector not found: {params['connector_id']}")
        return connector.connect()


class ConnectorDisconnectAction(BaseAction):
    name = "connector_disconnect"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "connector_id", action=self.name)
        connector = context.connectors.get(params["connector_id"])
        if connector is None:
            raise LookupError(f"Connector not found: {params['connector_id']}")
        return connector.disconnect()


class HttpRequestAction(BaseAction):
    name = "http_request"

    def __init__(self, default_timeout: float) -> None:
        self.default_timeout = default_timeout

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "url", action=self.name)
        method = str(params.get("method", "GET")).upper()
        timeout = float(params.get("timeout_sec", self.default_timeout))
        body = params.get("body")
        kwargs: Dict[str, Any] = {"headers": params.get("headers") or None, "timeout": timeout}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["data"] = body
        resp = requests.request(method, params["url"], **kwargs)
        resp.raise_for_status()
        content_type = resp.headers.get("Content-Type", "")
        payload: Any = resp.json() if "application/json" in content_type else resp.text
        return {"status_code": resp.status_code, "method": method, "url": params["url"], "body": payload}


class DelayAction(BaseAction):
    name = "delay"

    def __init__(self, max_delay_ms: int) -> None:
        self.max_delay_ms = max_delay_ms

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        requested = int(params.get("duration", 1000))
        duration = max(0, min(requested, self.max_delay_ms))
        if duration != requested:
            _logger.warning("Delay of %sms clamped to %sms", requested, duration)
        time.sleep(duration / 1000.0)
        return {"delayed": True, "duration": duration, "timestamp": utc_now_iso()}


def apply_transform(source: Any, transform: Mapping[str, Any], context: ActionContext) -> Any:
    """Apply a ``{type: template|function}`` transform to ``source``."""
    kind = transform.get("type")
    if kind == "template":
        values = context.template_values()
        if isinstance(source, Mapping):
            values.update(source)
        return resolve_template(transform.get("template"), values)
    if kind == "function":
        fn = transform.get("function")
        if not callable(fn):
            raise ValueError("function transform requires a callable")
        return fn(source, context)
    raise ValueError(f"Unknown transform type: {kind}")


class TransformDataAction(BaseAction):
    name = "transform_data"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "input", "transform", action=self.name)
        output = apply_transform(params["input"], params["transform"], context)
        return {"transformed": True, "input": params["input"], "output": output, "timestamp": utc_now_iso()}


class ConditionalAction(BaseAction):
    name = "conditional_action"

    def __init__(self, framework: "ActionFramework") -> None:
        self.framework = framework

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        if params.get("condition") is None:
            raise ValueError("conditional_action requires condition")
        outcome = evaluate_condition(params["condition"], context.template_values())
        chosen: Optional[Mapping[str, Any]] = params.get("true_action") if outcome else params.get("false_action")
        if not chosen:
            return {"condition_result": outcome, "executed": False, "timestamp": utc_now_iso()}
        result = self.framework.execute_action(chosen, context, resolve=False)
        return {"condition_result": outcome, "executed": True, "action": chosen.get("type"), "result": result}


class StoreDataAction(BaseAction):
    name = "store_data"

    def __call__(self, params: Dict[str, Any], context: ActionContext) -> Any:
        _require(params, "key", action=self.name)
        if context.cache is None:
            raise RuntimeError("Cache not available")
        context.cache.set(params["key"], params.get("value"), params.get("ttl"))
        return {"stored": True, "key": params["key"], "timestamp": utc_now_iso()}


def register_builtin_actions(
    framework: "ActionFramework",
    settings: Settings,
    notification_service: Optional[NotificationService] = None,
) -> None:
    """Register the standard action set on ``framework``."""
    service = notification_service or build_notification_service(
        settings.notifications,
        http_timeout=settings.actions.http_timeout_sec,
        smtp_timeout=settings.actions.smtp_timeout_sec,
    )
    email_provider = service.providers.get("email")
    if not isinstance(email_provider, SmtpEmailProvider):
        email_provider = SmtpEmailProvider(settings.notifications, timeout=settings.actions.smtp_timeout_sec)
    actions = [
        MqttPublishAction(),
        MqttSubscribeAction(),
        SendNotificationAction(service),
        SendSmsAction(service),
        SlackNotifyAction(service),
        SendEmailAction(email_provider),
        ConnectorExecuteAction(),
        ConnectorConnectAction(),
        ConnectorDisconnectAction(),
        LogEventAction(),
        StoreDataAction(),
        HttpRequestAction(settings.actions.http_timeout_sec),
        DelayAction(settings.actions.max_delay_ms),
        TransformDataAction(),
        ConditionalAction(framework),
    ]
    for action in actions:
        framework.register_action(action.name, action)


__all__ = [
    "BaseAction",
    "MqttPublishAction",
    "MqttSubscribeAction",
    "LogEventAction",
    "SendNotificationAction",
    "SendSmsAction",
    "SlackNotifyAction",
    "SendEmailAction",
    "ConnectorExecuteAction",
    "ConnectorConnectAction",
    "ConnectorDisconnectAction",
    "HttpRequestAction",
    "DelayAction",
    "TransformDataAction",
    "ConditionalAction",
    "StoreDataAction",
    "apply_transform",
    "register_builtin_actions",
]
