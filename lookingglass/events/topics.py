"""
Channel names shared by the bus, the engine and the orchestrator.
"""

EVENT = "event"
TYPE_DISCOVERED = "eventType:discovered"
FIELDS_DISCOVERED = "fields:discovered"
GENERIC_PROCESSED = "event:generic:processed"

RULE_REGISTERED = "rule:registered"
RULE_UPDATED = "rule:updated"
RULE_REMOVED = "rule:removed"
RULE_EXECUTED = "rule:executed"
RULE_AUTO_GENERATED = "rule:auto-generated"

FLOW_CREATED = "flow:created"
FLOW_UPDATED = "flow:updated"
FLOW_DELETED = "flow:deleted"
FLOW_EXECUTED = "flow:executed"

NOTIFICATION = "notification"


def event_type_channel(event_type: str) -> str:
    return f"{EVENT}:{event_type}"


def event_source_channel(source: str, event_type: str) -> str:
    return f"{EVENT}:{source}:{event_type}"
