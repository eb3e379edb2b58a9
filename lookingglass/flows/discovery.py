"""
Definitions synthesized from schema discovery.

A newly seen event type gets one auto-generated rule that logs the event
and republishes it on the broker. Fields discovered later are appended to
that rule so its log output and metadata track the growing schema.
Events that no rule handles get a one-shot logging flow.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..models.base import new_id
from ..models.event import Event
from ..models.rule import Rule

AUTO_CATEGORY = "auto-generated"
GENERIC_CATEGORY = "generic"
REPUBLISH_TOPIC_PREFIX = "unifi/events"


def auto_rule_id(event_type: str) -> str:
    return f"auto-{event_type}-rule"


def build_auto_rule(event_type: str, sample_data: Mapping[str, Any]) -> Dict[str, Any]:
    rule_id = auto_rule_id(event_type)
    return {
        "id": rule_id,
        "name": f"Auto-generated {event_type} Rule",
        "description": f"Automatically generated rule for event type: {event_type}",
        "conditions": {"event_type": event_type},
        "actions": [
            {
                "type": "log_event",
                "parameters": {
                    "level": "info",
                    "message": f"Auto-generated rule triggered for {event_type}",
                    "data": {
                        "rule": rule_id,
                        "event_type": event_type,
                        "sample_data": copy.deepcopy(dict(sample_data)),
                    },
                },
            },
            {
                "type": "mqtt_publish",
                "parameters": {
                    "topic": f"{REPUBLISH_TOPIC_PREFIX}/{event_type}",
                    "payload": {
                        "type": event_type,
                        "source": "{{source}}",
                        "timestamp": "{{timestamp}}",
                        "data": "{{data}}",
                    },
                    "qos": 1,
                },
            },
        ],
        "metadata": {
            "enabled": True,
            "category": AUTO_CATEGORY,
            "auto_generated": True,
            "event_type": event_type,
        },
    }


def _append_unique(target: List[str], names: Iterable[str]) -> List[str]:
    added = []
    for name in names:
        if name not in target:
            target.append(name)
            added.append(name)
    return added


def merge_new_fields(rule: Rule, field_names: Iterable[str]) -> Optional[Dict[str, Any]]:
    """
    Return the ``update_rule`` payload that records ``field_names`` on an
    auto-generated rule, or None when every name is already recorded.
    """
    names = list(field_names)
    discovered = list(rule.metadata.discovered_fields)
    changed = bool(_append_unique(discovered, names))

    actions = [action.model_dump() for action in rule.actions]
    for action in actions:
        if action["type"] != "log_event":
            continue
        data = action["parameters"].setdefault("data", {})
        if not isinstance(data, dict):
            continue
        logged = list(data.get("new_fields") or [])
        if _append_unique(logged, names):
            changed = True
        data["new_fields"] = logged
        break

    if not changed:
        return None
    return {"actions": actions, "metadata": {"discovered_fields": discovered}}


def build_generic_flow(event: Event) -> Dict[str, Any]:
    return {
        "id": new_id(f"generic-{event.type}"),
        "name": f"Generic {event.type} Flow",
        "description": f"Auto-generated flow for generic event type: {event.type}",
        "steps": [
            {
                "id": "generic-log",
                "type": "action",
                "action": {
                    "type": "log_event",
                    "parameters": {
                        "level": "info",
                        "message": f"Generic event {event.type} detected",
                        "data": {
                            "event_type": event.type,
                            "source": event.source,
                            "timestamp": event.timestamp,
                            "data": copy.deepcopy(event.data),
                        },
                    },
                },
            }
        ],
        "metadata": {
            "enabled": True,
            "category": GENERIC_CATEGORY,
            "auto_generated": True,
            "event_type": event.type,
        },
    }


__all__ = [
    "auto_rule_id",
    "build_auto_rule",
    "merge_new_fields",
    "build_generic_flow",
]
