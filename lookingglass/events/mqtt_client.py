"""
MQTT client wrapper used as the broker handle for ``mqtt_publish`` and
``mqtt_subscribe`` actions.

This module wraps the paho-mqtt client: it connects to the broker, keeps
reconnecting in the background after a drop (re-applying subscriptions)
and serialises structured payloads to JSON before publishing. Incoming
messages on subscribed topics are decoded and handed to ``on_message``;
``message_to_event`` turns them into bus events.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from ..config import MqttConfig
from ..core.errors import log_exception
from ..models.base import utc_now_iso

MQTT_MESSAGE_EVENT_TYPE = "mqtt_message"

MessageHandler = Callable[[str, Any], None]


def decode_payload(raw: bytes) -> Any:
    """JSON-decode ``raw`` when possible, otherwise return the text."""
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


def message_to_event(topic: str, payload: Any) -> Dict[str, Any]:
    """
    Map an incoming MQTT message onto a bus event.

    A JSON object carrying ``type`` is taken as an event; its source
    defaults to the topic and its timestamp to now. Anything else is
    wrapped as an ``mqtt_message`` event from the topic.
    """
    if isinstance(payload, dict) and payload.get("type"):
        event = dict(payload)
        event.setdefault("source", topic)
        event.setdefault("timestamp", utc_now_iso())
        return event
    return {
        "type": MQTT_MESSAGE_EVENT_TYPE,
        "source": topic,
        "timestamp": utc_now_iso(),
        "data": {"topic": topic, "payload": payload},
    }


class MQTTClient:
    """
    A wrapper around paho-mqtt providing a small publish/subscribe API.

    Parameters
    ----------
    config: MqttConfig
        Broker connection parameters.
    publish_timeout_sec: float, optional
        Upper bound on waiting for a QoS>0 publish to be acknowledged;
        ``config.publish_timeout_sec`` when omitted.
    on_message: callable, optional
        ``on_message(topic, payload)`` for messages on subscribed topics.
    """

    def __init__(
        self,
        config: MqttConfig,
        publish_timeout_sec: Optional[float] = None,
        on_message: Optional[MessageHandler] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config = config
        self.publish_timeout_sec = publish_timeout_sec if publish_timeout_sec is not None else config.publish_timeout_sec
        self.message_handler = on_message
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=config.client_id or "")
        if config.username:
            self.client.username_pw_set(config.username, config.password)
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.on_message = self.on_message
        self._subscriptions: Dict[str, int] = {}
        self._connected = threading.Event()
        self._stop_flag = threading.Event()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None) -> None:  # type: ignore[no-untyped-def]
        if not reason_code.is_failure:
            self.logger.info("Connected to MQTT broker %s:%s", self.config.host, self.config.port)
            self._connected.set()
            for topic, qos in list(self._subscriptions.items()):
                self.client.subscribe(topic, qos=qos)
        else:
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)

    def on_disconnect(self, client: mqtt.Client, userdata, flags, reason_code, properties=None) -> None:  # type: ignore[no-untyped-def]
        self.logger.warning("MQTT disconnected: %s", reason_code)
        self._connected.clear()
        if not self._stop_flag.is_set():
            reconnect_thread = threading.Thread(target=self._reconnect, name="MQTTReconnect", daemon=True)
            reconnect_thread.start()

    def on_message(self, client: mqtt.Client, userdata, message) -> None:  # type: ignore[no-untyped-def]
        if self.message_handler is None:
            return
        try:
            self.message_handler(message.topic, decode_payload(message.payload))
        except Exception as exc:
            log_exception(self.logger, "MQTT message handling failed", extra={"topic": message.topic}, exc=exc)

    def _reconnect(self) -> None:
        while not self._stop_flag.is_set():
            try:
                self.logger.info("Attempting to reconnect to MQTT broker…")
                self.client.reconnect()
                return
            except Exception as exc:
                self.logger.error("MQTT reconnection failed: %s", exc)
                time.sleep(5)

    def connect(self, timeout: float = 10.0) -> bool:
        """Connect to the broker and start the network loop."""
        self.client.connect(self.config.host, self.config.port, keepalive=60)
        self.client.loop_start()
        if not self._connected.wait(timeout=timeout):
            self.logger.warning("MQTT connection timeout; continuing anyway")
            return False
        return True

    def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False) -> Dict[str, Any]:
        """Publish ``payload`` (JSON-encoded unless already text) and report the outcome."""
        message = payload if isinstance(payload, (str, bytes)) else json.dumps(payload, default=str)
        info = self.client.publish(topic, message, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise RuntimeError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")
        if qos > 0:
            info.wait_for_publish(timeout=self.publish_timeout_sec)
        return {"topic": topic, "qos": qos, "retain": retain, "mid": info.mid, "published": info.is_published()}

    def subscribe(self, topic: str, qos: int = 0) -> Dict[str, Any]:
        """Subscribe to ``topic``; the subscription survives reconnects."""
        self._subscriptions[topic] = qos
        rc, mid = self.client.subscribe(topic, qos=qos)
        if rc != mqtt.MQTT_ERR_SUCCESS and rc != mqtt.MQTT_ERR_NO_CONN:
            raise RuntimeError(f"MQTT subscribe to {topic} failed: {mqtt.error_string(rc)}")
        self.logger.info("Subscribed to MQTT topic %s qos=%s", topic, qos)
        return {"topic": topic, "qos": qos, "mid": mid, "subscribed": rc == mqtt.MQTT_ERR_SUCCESS}

    def stop(self) -> None:
        """Stop the network loop and disconnect."""
        self._stop_flag.set()
        try:
            self.client.disconnect()
        finally:
            self.client.loop_stop()


__all__ = ["MQTTClient", "MQTT_MESSAGE_EVENT_TYPE", "decode_payload", "message_to_event"]
