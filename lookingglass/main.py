"""
Entry point for the Looking Glass automation core.

Usage (from project root)::

    python -m lookingglass.main --config config/lookingglass_config.yaml

This script loads the configuration, initializes logging, connects to
the MQTT broker, wires the event bus, rule engine, action framework and
flow orchestrator together and starts event dispatch. It runs until
interrupted. ``--replay`` publishes events from a JSON-lines file first.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import Settings, load_settings
from .core.errors import AutomationError, guarded_call
from .events.mqtt_client import MQTTClient, message_to_event
from .flows.orchestrator import FlowOrchestrator
from .logging_config import setup_logging


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Looking Glass automation core")
    parser.add_argument(
        "--config",
        type=str,
        default="config/lookingglass_config.yaml",
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL); overrides the config file",
    )
    parser.add_argument(
        "--replay",
        type=str,
        default=None,
        help="JSON-lines file of events to publish after startup",
    )
    return parser.parse_args(argv)


def _connect_broker(settings: Settings, logger: logging.Logger) -> Optional[MQTTClient]:
    if not settings.mqtt.enabled:
        logger.info("MQTT disabled; mqtt_publish actions will fail until a broker is configured")
        return None
    client = MQTTClient(settings.mqtt)
    try:
        client.connect()
    except OSError as exc:
        logger.error("Could not reach MQTT broker %s:%s: %s", settings.mqtt.host, settings.mqtt.port, exc)
        return None
    return client


def replay_events(orchestrator: FlowOrchestrator, path: str, logger: logging.Logger) -> int:
    published = 0
    with Path(path).open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                orchestrator.bus.publish_event(json.loads(line))
                published += 1
            except (ValueError, AutomationError) as exc:
                logger.warning("Skipping replay line %s: %s", lineno, exc)
    logger.info("Replayed %s events from %s", published, path)
    return published


def main(argv: List[str] | None = None) -> int:
    # Load local .env so broker and notification credentials are honored.
    load_dotenv()
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        settings: Settings = load_settings(args.config)
    except Exception as exc:
        setup_logging()
        logging.getLogger("main").error("Failed to load configuration: %s", exc)
        return 1
    setup_logging(level=args.log_level or settings.log_level, log_file=settings.log_file)
    logger = logging.getLogger("main")
    logger.info("Loaded settings: %s rules, %s flows", len(settings.rules), len(settings.flows))

    broker = _connect_broker(settings, logger)
    orchestrator = FlowOrchestrator(settings, broker=broker)
    if broker is not None:
        broker.message_handler = lambda topic, payload: orchestrator.bus.publish_event(message_to_event(topic, payload))
    try:
        orchestrator.initialize()
    except AutomationError as exc:
        logger.error("Startup failed: %s", exc)
        if broker is not None:
            guarded_call("MQTT stop", broker.stop, logger=logger)
        return 1
    orchestrator.bus.start()
    if args.replay:
        replay_events(orchestrator, args.replay, logger)
    logger.info("Automation core started; press Ctrl+C to stop")
    try:
        while True:
            # Keep the main thread alive
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down automation core…")
    finally:
        guarded_call("Orchestrator shutdown", orchestrator.shutdown, logger=logger)
        if broker is not None:
            guarded_call("MQTT stop", broker.stop, logger=logger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
