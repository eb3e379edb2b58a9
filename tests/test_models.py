import datetime

import pytest
from pydantic import ValidationError

from lookingglass.models import ConditionStep, Event, Flow, Predicate, Rule, RuleStep, TransformStep


def test_event_generates_id_and_keeps_payload():
    event = Event(type="motion", source="cam-1", timestamp="2026-01-20T12:00:00Z", data={"zone": "z1"})
    assert event.id.startswith("event-")
    assert event.data == {"zone": "z1"}
    assert event.metadata == {}
    parsed = event.parsed_timestamp()
    assert parsed is not None
    assert parsed.tzinfo is not None


def test_event_is_frozen():
    event = Event(type="motion", source="cam-1", timestamp="2026-01-20T12:00:00Z")
    with pytest.raises(ValidationError):
        event.type = "vehicle"


def test_event_timestamp_from_naive_datetime_is_utc():
    event = Event(type="motion", source="cam-1", timestamp=datetime.datetime(2026, 1, 20, 12, 0))
    assert event.timestamp == "2026-01-20T12:00:00+00:00"


def test_rule_accepts_wire_names_and_writes_them_back():
    rule = Rule.model_validate(
        {
            "name": "Motion",
            "conditions": {"eventType": ["motion", "vehicle"], "timeRange": {"start": "22:00", "end": "06:00"}},
            "actions": [{"type": "log_event", "parameters": {"message": "m"}}],
            "metadata": {"autoGenerated": True, "discoveredFields": ["zone"]},
        }
    )
    assert rule.event_types() == ["motion", "vehicle"]
    assert rule.metadata.auto_generated is True
    assert rule.metadata.enabled is True
    doc = rule.to_document()
    assert doc["conditions"]["eventType"] == ["motion", "vehicle"]
    assert doc["metadata"]["discoveredFields"] == ["zone"]
    assert "id" not in doc


def test_rule_requires_name_and_actions():
    with pytest.raises(ValidationError):
        Rule.model_validate({"name": "no actions", "actions": []})
    with pytest.raises(ValidationError):
        Rule.model_validate({"name": "", "actions": [{"type": "log_event"}]})
    with pytest.raises(ValidationError):
        Rule.model_validate({"name": "untyped", "actions": [{"parameters": {}}]})


def test_flow_steps_are_parsed_by_type():
    flow = Flow.model_validate(
        {
            "name": "Pipeline",
            "steps": [
                {"id": "r", "type": "rule", "ruleId": "rule-1"},
                {"id": "c", "type": "condition", "condition": {"field": "input.count", "op": "gt", "value": 1}},
                {"id": "t", "type": "transform", "transform": {"type": "template", "template": "{{count}}"}},
            ],
        }
    )
    assert isinstance(flow.steps[0], RuleStep)
    assert flow.steps[0].rule_id == "rule-1"
    assert isinstance(flow.steps[1], ConditionStep)
    assert isinstance(flow.steps[1].condition, Predicate)
    assert isinstance(flow.steps[2], TransformStep)
    assert flow.metadata.enabled is True


def test_flow_rejects_malformed_steps():
    with pytest.raises(ValidationError):
        Flow.model_validate({"name": "empty", "steps": []})
    with pytest.raises(ValidationError):
        Flow.model_validate({"name": "bad type", "steps": [{"id": "s", "type": "teleport"}]})
    with pytest.raises(ValidationError):
        Flow.model_validate({"name": "no id", "steps": [{"type": "rule", "ruleId": "r"}]})
    with pytest.raises(ValidationError):
        Flow.model_validate(
            {"name": "no fn", "steps": [{"id": "t", "type": "transform", "transform": {"type": "function"}}]}
        )
