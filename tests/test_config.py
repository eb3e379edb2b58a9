import logging
import textwrap
from pathlib import Path

import pytest

from lookingglass.config import load_settings
from lookingglass.logging_config import resolve_level, setup_logging

ENV_VARS = (
    "MQTT_ENABLED",
    "MQTT_BROKER_HOST",
    "MQTT_BROKER_PORT",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "LG_LOG_LEVEL",
    "LG_LOG_FILE",
    "LG_HTTP_TIMEOUT_SEC",
    "NOTIFY_WEBHOOK_URLS",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USER",
    "SMTP_PASSWORD",
    "SMTP_FROM",
    "SMTP_TO",
    "SMTP_STARTTLS",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "MQTT_PUBLISH_TIMEOUT_SEC",
    "SMS_WEBHOOK_URL",
    "SMS_TO",
    "SLACK_WEBHOOK_URL",
    "SLACK_CHANNEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_load_settings_from_yaml(tmp_path: Path):
    path = _write(
        tmp_path,
        """
        mqtt:
          host: broker.local
          port: 1884
        actions:
          max_delay_ms: 500
        notifications:
          webhook_urls: [http://hooks.local/a]
          smtp:
            host: smtp.local
            to: [ops@example.com]
        logging:
          level: DEBUG
        rules:
          - name: Motion
            actions: [{type: log_event}]
        flows:
          - name: Flow
            steps: [{id: s, type: rule, ruleId: r}]
        """,
    )
    settings = load_settings(str(path))
    assert settings.mqtt.host == "broker.local"
    assert settings.mqtt.port == 1884
    assert settings.mqtt.enabled is True
    assert settings.actions.max_delay_ms == 500
    assert settings.actions.http_timeout_sec == 10.0
    assert settings.notifications.webhook_urls == ["http://hooks.local/a"]
    assert settings.notifications.smtp_host == "smtp.local"
    assert settings.notifications.smtp_to == ["ops@example.com"]
    assert settings.log_level == "DEBUG"
    assert len(settings.rules) == 1
    assert settings.flows[0]["steps"][0]["ruleId"] == "r"


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch):
    path = _write(
        tmp_path,
        """
        mqtt:
          host: broker.local
        """,
    )
    monkeypatch.setenv("MQTT_BROKER_HOST", "10.0.0.5")
    monkeypatch.setenv("MQTT_BROKER_PORT", "8883")
    monkeypatch.setenv("MQTT_ENABLED", "false")
    monkeypatch.setenv("LG_HTTP_TIMEOUT_SEC", "2.5")
    monkeypatch.setenv("NOTIFY_WEBHOOK_URLS", "http://a, http://b,")
    monkeypatch.setenv("LG_LOG_LEVEL", "WARNING")

    settings = load_settings(str(path))
    assert settings.mqtt.host == "10.0.0.5"
    assert settings.mqtt.port == 8883
    assert settings.mqtt.enabled is False
    assert settings.actions.http_timeout_sec == 2.5
    assert settings.notifications.webhook_urls == ["http://a", "http://b"]
    assert settings.log_level == "WARNING"


def test_empty_file_uses_defaults(tmp_path: Path):
    settings = load_settings(str(_write(tmp_path, "")))
    assert settings.mqtt.host == "localhost"
    assert settings.event_bus.queue_size == 1000
    assert settings.rules == []


def test_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / "missing.yaml"))


def test_sample_config_loads():
    sample = Path(__file__).resolve().parent.parent / "config" / "lookingglass_config.yaml"
    settings = load_settings(str(sample))
    assert {r["id"] for r in settings.rules} >= {"motion-notification-rule", "smart-detect-alert-rule"}
    assert [f["id"] for f in settings.flows] == ["motion-notification", "smart-detect-alert"]


def test_resolve_level_accepts_names_and_numbers():
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level(" Warning ") == logging.WARNING
    assert resolve_level(logging.ERROR) == logging.ERROR
    assert resolve_level("chatty") == logging.INFO
    assert resolve_level(None) == logging.INFO


def test_setup_logging_writes_file_and_quiets_paho(tmp_path: Path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    log_file = tmp_path / "logs" / "core.log"
    try:
        setup_logging("info", str(log_file))
        logging.getLogger("RuleEngine").info("Rule registered: doorbell")
        assert logging.getLogger("paho").level == logging.WARNING
        for handler in root.handlers:
            handler.flush()
        assert "[INFO] RuleEngine: Rule registered: doorbell" in log_file.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)
        logging.getLogger("paho").setLevel(logging.NOTSET)
        logging.getLogger("urllib3").setLevel(logging.NOTSET)


def test_publish_timeout_and_chat_channels_from_yaml_and_env(tmp_path: Path, monkeypatch):
    path = _write(
        tmp_path,
        """
        mqtt:
          publish_timeout_sec: 1.5
        notifications:
          sms:
            webhook_url: http://sms.local/send
            to: ["+15550001"]
          slack:
            webhook_url: http://slack.local/hook
        """,
    )
    monkeypatch.setenv("LG_HTTP_TIMEOUT_SEC", "30")
    monkeypatch.setenv("SLACK_CHANNEL", "#alerts")

    settings = load_settings(str(path))
    assert settings.mqtt.publish_timeout_sec == 1.5
    assert settings.actions.http_timeout_sec == 30.0
    assert settings.notifications.sms_webhook_url == "http://sms.local/send"
    assert settings.notifications.sms_to == ["+15550001"]
    assert settings.notifications.slack_webhook_url == "http://slack.local/hook"
    assert settings.notifications.slack_channel == "#alerts"

    monkeypatch.setenv("MQTT_PUBLISH_TIMEOUT_SEC", "0.25")
    monkeypatch.setenv("SMS_TO", "+1, +2")
    settings = load_settings(str(path))
    assert settings.mqtt.publish_timeout_sec == 0.25
    assert settings.notifications.sms_to == ["+1", "+2"]


def test_package_discovery_includes_directories_without_init():
    tomllib = pytest.importorskip("tomllib")
    root = Path(__file__).resolve().parent.parent
    with (root / "pyproject.toml").open("rb") as f:
        find = tomllib.load(f)["tool"]["setuptools"]["packages"]["find"]
    assert find["namespaces"] is True
    for name in ("core", "events", "storage"):
        assert (root / "lookingglass" / name).is_dir()
        assert not (root / "lookingglass" / name / "__init__.py").exists()
