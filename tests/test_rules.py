import logging

import pytest

from lookingglass.actions import ActionFramework
from lookingglass.actions.notifications import LogNotificationProvider, NotificationService
from lookingglass.config import Settings
from lookingglass.core.errors import ActionExecutionError, DefinitionError, RuleNotFoundError
from lookingglass.events import topics
from lookingglass.models import ActionInvocation, Event, Rule, RuleConditions
from lookingglass.rules import RuleEngine


def _event(type_="motion", source="cam-1", timestamp="2026-01-20T12:00:00Z", **data):
    return Event(type=type_, source=source, timestamp=timestamp, data=data)


def _rule(name, enabled=True, **conditions):
    return {
        "name": name,
        "conditions": conditions or None,
        "actions": [{"type": "record", "parameters": {"rule": name}}],
        "metadata": {"enabled": enabled},
    }


def _engine():
    calls = []
    emitted = []
    engine = RuleEngine(emit=lambda topic, payload: emitted.append(topic))
    engine.register_action("record", lambda params, context: calls.append(params) or params)
    return engine, calls, emitted


def test_register_assigns_ids_and_rejects_bad_definitions():
    engine, _, emitted = _engine()
    rule_id = engine.register_rule(_rule("A", eventType="motion"))
    assert rule_id.startswith("rule-")
    assert engine.get_rule(rule_id).name == "A"
    assert topics.RULE_REGISTERED in emitted

    engine.register_rule({**_rule("B"), "id": "fixed"})
    with pytest.raises(DefinitionError):
        engine.register_rule({**_rule("C"), "id": "fixed"})
    with pytest.raises(DefinitionError):
        engine.register_rule({"name": "no actions", "actions": []})
    with pytest.raises(DefinitionError):
        engine.register_rule({"actions": [{"type": "record"}]})


def test_two_enabled_rules_match_and_disabled_is_skipped():
    engine, calls, emitted = _engine()
    engine.register_rule(_rule("A", eventType="motion"))
    engine.register_rule(_rule("B", source="cam-1"))
    engine.register_rule(_rule("C", enabled=False, eventType="motion"))

    result = engine.process_event(_event())
    assert result.processed is True
    assert result.rules_matched == 2
    assert sorted(c["rule"] for c in calls) == ["A", "B"]
    assert emitted.count(topics.RULE_EXECUTED) == 2


def test_no_match_is_not_processed():
    engine, calls, _ = _engine()
    engine.register_rule(_rule("A", eventType="vehicle"))
    result = engine.process_event(_event())
    assert result.processed is False
    assert result.rules_matched == 0
    assert calls == []


def test_removed_action_is_reported_per_action():
    engine, calls, _ = _engine()
    engine.register_action("notify", lambda params, context: "sent")
    rule_id = engine.register_rule(
        {
            "name": "Notify then record",
            "conditions": {"eventType": "motion"},
            "actions": [{"type": "notify"}, {"type": "record", "parameters": {"rule": "after"}}],
        }
    )
    engine.unregister_action("notify")
    assert [r.id for r in engine.get_rules()] == [rule_id]

    result = engine.process_event(_event())
    assert result.rules_matched == 1
    execution = result.executions[0]
    assert len(execution.errors) == 1
    assert isinstance(execution.errors[0], ActionExecutionError)
    assert execution.results[1].success is True
    assert calls == [{"rule": "after"}]
    assert engine.get_stats()["errors"] == 1


def test_raising_action_is_wrapped():
    engine, _, _ = _engine()

    def _boom(params, context):
        raise RuntimeError("device offline")

    engine.register_action("boom", _boom)
    engine.register_rule({"name": "R", "actions": [{"type": "boom"}]})
    execution = engine.process_event(_event()).executions[0]
    error = execution.errors[0]
    assert isinstance(error, ActionExecutionError)
    assert "device offline" in str(error)
    assert execution.to_dict()["results"][0]["success"] is False


def test_condition_clauses():
    engine, calls, _ = _engine()
    engine.register_rule(_rule("sources", source=["cam-2", "cam-3"]))
    engine.register_rule(_rule("data", data={"zone": "z1", "meta.level": 2}))
    engine.register_rule(_rule("night", timeRange={"start": "22:00", "end": "06:00"}))

    engine.process_event(_event(zone="z1", meta={"level": 2}))
    assert [c["rule"] for c in calls] == ["data"]

    calls.clear()
    engine.process_event(_event(source="cam-3", timestamp="2026-01-20T23:30:00Z"))
    assert [c["rule"] for c in calls] == ["sources", "night"]

    calls.clear()
    engine.process_event(_event(timestamp="2026-01-21T05:59:00Z"))
    assert [c["rule"] for c in calls] == ["night"]


def test_custom_condition_errors_are_isolated(caplog):
    engine, calls, _ = _engine()

    def _explode(event):
        raise KeyError("speed")

    engine.register_rule(
        Rule(
            name="custom",
            conditions=RuleConditions(event_type="motion", custom=_explode),
            actions=[ActionInvocation(type="record", parameters={"rule": "custom"})],
        )
    )
    engine.register_rule(
        Rule(
            name="fast",
            conditions=RuleConditions(custom=lambda event: event.data.get("speed", 0) > 50),
            actions=[ActionInvocation(type="record", parameters={"rule": "fast"})],
        )
    )
    caplog.set_level(logging.ERROR)
    result = engine.process_event(_event(speed=80))
    assert result.rules_matched == 1
    assert calls == [{"rule": "fast"}]
    assert any("Rule condition failed" in rec.message for rec in caplog.records)


def test_update_reindexes_and_merges_metadata():
    engine, _, emitted = _engine()
    rule_id = engine.register_rule(_rule("A", eventType="motion"))
    created_at = engine.get_rule(rule_id).metadata.created_at

    updated = engine.update_rule(rule_id, {"conditions": {"eventType": "vehicle"}, "metadata": {"category": "traffic"}})
    assert updated.id == rule_id
    assert updated.metadata.category == "traffic"
    assert updated.metadata.enabled is True
    assert updated.metadata.created_at == created_at
    assert engine.get_rules_by_event_type("motion") == []
    assert [r.id for r in engine.get_rules_by_event_type("vehicle")] == [rule_id]
    assert topics.RULE_UPDATED in emitted

    engine.set_rule_enabled(rule_id, False)
    assert engine.process_event(_event("vehicle")).rules_matched == 0

    with pytest.raises(RuleNotFoundError):
        engine.update_rule("missing", {"name": "x"})
    with pytest.raises(DefinitionError):
        engine.update_rule(rule_id, {"actions": []})


def test_update_keeps_custom_predicate():
    engine, calls, _ = _engine()
    rule_id = engine.register_rule(
        Rule(
            name="fast",
            conditions=RuleConditions(custom=lambda event: event.data.get("speed", 0) > 50),
            actions=[ActionInvocation(type="record", parameters={"rule": "fast"})],
        )
    )
    engine.update_rule(rule_id, {"description": "speeding"})
    assert engine.process_event(_event(speed=10)).rules_matched == 0
    assert engine.process_event(_event(speed=90)).rules_matched == 1


def test_delete_load_and_export():
    engine, _, emitted = _engine()
    ids = engine.load_rules([_rule("A", eventType="motion"), {**_rule("B"), "id": "b"}])
    assert len(ids) == 2
    docs = engine.export_rules()
    assert docs[0]["conditions"]["eventType"] == "motion"
    assert docs[1]["id"] == "b"

    engine.delete_rule("b")
    assert engine.get_rule("b") is None
    assert topics.RULE_REMOVED in emitted
    with pytest.raises(RuleNotFoundError):
        engine.delete_rule("b")
    assert engine.get_stats()["total_rules"] == 1


def test_motion_event_fires_log_action_once(caplog):
    framework = ActionFramework(Settings(), notification_service=NotificationService([LogNotificationProvider()]))
    engine = RuleEngine()
    engine.register_action(
        "log_event",
        lambda params, context: framework.execute_action(ActionInvocation(type="log_event", parameters=params), context),
    )
    engine.register_rule(
        {"conditions": {"eventType": "motion"}, "name": "motion", "actions": [{"type": "log_event", "parameters": {"message": "m"}}]}
    )
    caplog.set_level(logging.INFO)

    result = engine.process_event({"type": "motion", "source": "cam-1", "timestamp": "2026-01-20T12:00:00Z", "data": {"zone": "z1"}})
    assert result.processed is True
    assert result.rules_matched == 1
    logged = [rec for rec in caplog.records if rec.name == "actions"]
    assert len(logged) == 1
    assert logged[0].message.startswith("m ")
    assert result.executions[0].results[0].result["message"] == "m"
