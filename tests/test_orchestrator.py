import logging
import threading

import pytest

from lookingglass.actions.notifications import LogNotificationProvider, NotificationService
from lookingglass.config import Settings
from lookingglass.core.errors import (
    DefinitionError,
    FlowDisabledError,
    FlowNotFoundError,
    OrchestratorError,
    RuleNotFoundError,
)
from lookingglass.events import topics
from lookingglass.flows import FlowOrchestrator
from lookingglass.models import Flow


class _DummyBroker:
    def __init__(self):
        self.published = []

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append({"topic": topic, "payload": payload, "qos": qos})
        return {"topic": topic, "published": True}


def _orchestrator(settings=None, broker=None):
    orchestrator = FlowOrchestrator(
        settings or Settings(),
        broker=broker if broker is not None else _DummyBroker(),
        notification_service=NotificationService([LogNotificationProvider()]),
    )
    orchestrator.initialize()
    return orchestrator


def _event(type_="doorbell", source="cam-1", **data):
    return {"type": type_, "source": source, "timestamp": "2026-01-20T12:00:00Z", "data": data}


def _echo_flow(name="Echo"):
    return {
        "name": name,
        "steps": [{"id": "echo", "type": "action", "action": {"type": "log_event", "parameters": {"message": "hi"}}}],
    }


def test_initialize_shares_actions_with_engine():
    orchestrator = _orchestrator()
    assert set(orchestrator.action_framework.get_available_actions()) <= set(orchestrator.rule_engine.get_actions())
    assert orchestrator.bus.subscriber_count(topics.EVENT) == 1
    assert orchestrator.initialized


def test_initialize_loads_configured_definitions():
    settings = Settings(
        rules=[{"id": "r1", "name": "Motion", "conditions": {"eventType": "motion"}, "actions": [{"type": "log_event"}]}],
        flows=[{"id": "f1", "name": "Flow", "steps": [{"id": "s", "type": "rule", "ruleId": "r1"}]}],
    )
    orchestrator = _orchestrator(settings)
    assert orchestrator.get_rule("r1") is not None
    assert orchestrator.get_flow("f1").steps[0].rule_id == "r1"


def test_initialize_failure_is_fatal():
    settings = Settings(flows=[{"name": "no steps", "steps": []}])
    orchestrator = FlowOrchestrator(settings, notification_service=NotificationService([LogNotificationProvider()]))
    with pytest.raises(OrchestratorError):
        orchestrator.initialize()
    assert orchestrator.bus.subscriber_count() == 0


def test_create_flow_issues_new_ids_and_round_trips():
    orchestrator = _orchestrator()
    created = []
    orchestrator.bus.subscribe(topics.FLOW_CREATED, created.append)

    first = orchestrator.create_flow(_echo_flow("First"))
    second = orchestrator.create_flow(_echo_flow("Second"))
    assert first != second
    stored = orchestrator.get_flow(first)
    assert stored.name == "First"
    assert stored.metadata.enabled is True
    assert stored.steps[0].action.parameters == {"message": "hi"}
    assert len(created) == 2
    assert [f.id for f in orchestrator.get_flows()] == [first, second]

    with pytest.raises(DefinitionError):
        orchestrator.create_flow({**_echo_flow(), "id": first})
    with pytest.raises(DefinitionError):
        orchestrator.create_flow({"name": "empty", "steps": []})
    with pytest.raises(DefinitionError):
        orchestrator.create_flow({"name": "no id", "steps": [{"type": "rule", "ruleId": "r"}]})


def test_failing_middle_step_is_recorded_and_flow_continues():
    orchestrator = _orchestrator()

    def _boom(params, context):
        raise RuntimeError("kaput")

    orchestrator.register_action("boom", _boom)
    flow_id = orchestrator.create_flow(
        {
            "name": "Three steps",
            "steps": [
                {"id": "one", "type": "action", "action": {"type": "log_event", "parameters": {"message": "first"}}},
                {"id": "two", "type": "action", "action": {"type": "boom"}},
                {"id": "three", "type": "transform", "transform": {"type": "template", "template": "zone {{zone}}"}},
            ],
        }
    )
    results = orchestrator.execute_flow(flow_id, {"zone": "z1"})
    assert len(results) == 3
    assert results[0]["logged"] is True
    assert results[1] == {"error": "Action boom failed: kaput"}
    assert results[2]["output"] == "zone z1"

    stats = orchestrator.get_stats()
    assert stats["total_flows"] == 1
    assert stats["failed_flows"] == 1
    assert stats["active_flows"] == 0


def test_execute_flow_rejects_missing_and_disabled():
    orchestrator = _orchestrator()
    with pytest.raises(FlowNotFoundError):
        orchestrator.execute_flow("nope")
    flow_id = orchestrator.create_flow({**_echo_flow(), "metadata": {"enabled": False}})
    with pytest.raises(FlowDisabledError):
        orchestrator.execute_flow(flow_id)

    orchestrator.update_flow(flow_id, {"metadata": {"enabled": True}, "description": "now on"})
    assert orchestrator.get_flow(flow_id).description == "now on"
    assert orchestrator.execute_flow(flow_id)[0]["logged"] is True


def test_condition_and_transform_steps_see_previous_results():
    orchestrator = _orchestrator()
    flow_id = orchestrator.create_flow(
        {
            "name": "Gate",
            "steps": [
                {"id": "check", "type": "condition", "condition": {"field": "input.count", "op": "gte", "value": 2}},
                {"id": "shape", "type": "transform", "transform": {"type": "template", "template": {"ok": "{{previous.result}}"}}},
                {
                    "id": "fn",
                    "type": "transform",
                    "input": "{{input.count}}",
                    "transform": {"type": "function", "function": lambda value, context: value * 10},
                },
            ],
        }
    )
    results = orchestrator.execute_flow(flow_id, {"count": 3})
    assert results[0]["result"] is True
    assert results[0]["condition"] == {"field": "input.count", "op": "gte", "value": 2}
    assert results[1]["output"] == {"ok": True}
    assert results[2]["output"] == 30


def test_rule_step_routes_flow_input_through_engine():
    orchestrator = _orchestrator()
    orchestrator.create_rule(
        {
            "id": "zone-rule",
            "name": "Zone rule",
            "conditions": {"eventType": "motion", "source": "cam-9", "data": {"zone": "z1"}},
            "actions": [{"type": "log_event", "parameters": {"message": "zone {{zone}}"}}],
        }
    )
    flow_id = orchestrator.create_flow({"name": "Rule flow", "steps": [{"id": "r", "type": "rule", "ruleId": "zone-rule"}]})
    result = orchestrator.execute_flow(flow_id, {"zone": "z1"})[0]
    assert result["processed"] is True
    assert result["rules_matched"] == 1
    assert result["executions"][0]["results"][0]["result"]["message"] == "zone z1"

    missing = orchestrator.create_flow({"name": "Broken", "steps": [{"id": "r", "type": "rule", "ruleId": "ghost"}]})
    assert orchestrator.execute_flow(missing) == [{"error": "Rule not found: ghost"}]


def test_new_event_type_generates_one_auto_rule_and_tracks_fields():
    broker = _DummyBroker()
    orchestrator = _orchestrator(broker=broker)
    discovered, generated, fields = [], [], []
    orchestrator.bus.subscribe(topics.TYPE_DISCOVERED, discovered.append)
    orchestrator.bus.subscribe(topics.RULE_AUTO_GENERATED, generated.append)
    orchestrator.bus.subscribe(topics.FIELDS_DISCOVERED, fields.append)

    orchestrator.bus.publish_event(_event(pressed=True))
    orchestrator.bus.publish_event(_event(pressed=True))
    assert len(discovered) == 1
    assert len(generated) == 1
    auto_rules = orchestrator.get_auto_generated_rules()
    assert [r.id for r in auto_rules] == ["auto-doorbell-rule"]
    assert auto_rules[0].metadata.auto_generated is True

    assert len(broker.published) == 2
    assert broker.published[0]["topic"] == "unifi/events/doorbell"
    assert broker.published[0]["payload"] == {
        "type": "doorbell",
        "source": "cam-1",
        "timestamp": "2026-01-20T12:00:00Z",
        "data": {"pressed": True},
    }
    assert broker.published[0]["qos"] == 1

    orchestrator.bus.publish_event(_event(pressed=True, battery=80))
    orchestrator.bus.publish_event(_event(pressed=True, battery=75))
    assert len(fields) == 1
    rule = orchestrator.get_rule("auto-doorbell-rule")
    assert rule.metadata.discovered_fields == ["battery"]
    log_action = next(a for a in rule.actions if a.type == "log_event")
    assert log_action.parameters["data"]["new_fields"] == ["battery"]
    assert orchestrator.get_discovered_event_types() == ["doorbell"]
    assert orchestrator.get_discovered_fields() == {"doorbell": ["pressed", "battery"]}


def test_synthesis_failure_does_not_block_ingestion(caplog):
    orchestrator = _orchestrator()
    generic = []
    orchestrator.bus.subscribe(topics.GENERIC_PROCESSED, generic.append)

    def _fail(definition):
        raise RuntimeError("registry locked")

    orchestrator.rule_engine.register_rule = _fail
    caplog.set_level(logging.ERROR)
    orchestrator.bus.publish_event(_event("siren"))
    assert any("Rule synthesis failed" in rec.message for rec in caplog.records)
    assert len(generic) == 1
    assert generic[0]["event_type"] == "siren"


def test_unmatched_event_runs_generic_flow():
    orchestrator = _orchestrator()
    generic = []
    orchestrator.bus.subscribe(topics.GENERIC_PROCESSED, generic.append)

    orchestrator.bus.publish_event(_event())
    assert generic == []
    orchestrator.update_rule("auto-doorbell-rule", {"metadata": {"enabled": False}})
    orchestrator.bus.publish_event(_event())
    assert len(generic) == 1
    assert generic[0]["event_type"] == "doorbell"
    assert generic[0]["flow_id"].startswith("generic-doorbell-")
    assert orchestrator.get_flow(generic[0]["flow_id"]) is None
    stats = orchestrator.get_stats()
    assert stats["total_flows"] == 2
    assert stats["completed_flows"] == 2
    assert stats["last_flow"]["flow_id"] == generic[0]["flow_id"]


def test_rule_pass_through_and_delete():
    orchestrator = _orchestrator()
    rule_id = orchestrator.create_rule({"name": "R", "actions": [{"type": "log_event"}]})
    assert [r.id for r in orchestrator.get_rules()] == [rule_id]
    assert orchestrator.delete_rule(rule_id) is True
    with pytest.raises(RuleNotFoundError):
        orchestrator.delete_rule(rule_id)

    flow_id = orchestrator.create_flow(Flow.model_validate(_echo_flow()))
    assert orchestrator.delete_flow(flow_id) is True
    with pytest.raises(FlowNotFoundError):
        orchestrator.delete_flow(flow_id)


def test_stats_and_export_state():
    orchestrator = _orchestrator()
    orchestrator.create_flow({**_echo_flow(), "id": "echo"})
    orchestrator.bus.publish_event(_event(pressed=True))

    stats = orchestrator.get_stats()
    assert stats["flows"] == 1
    assert stats["event_bus"]["total_events"] == 1
    assert stats["rule_engine"]["total_rules"] == 1
    assert stats["action_framework"]["total_executions"] >= 2

    state = orchestrator.export_state()
    assert list(state["flows"]) == ["echo"]
    assert state["rules"]["auto-doorbell-rule"]["metadata"]["autoGenerated"] is True
    assert state["discovered_schema"] == {"doorbell": ["pressed"]}


def test_handlers_cannot_change_the_recorded_event():
    orchestrator = _orchestrator()

    def _tag(params, context):
        params["payload"]["injected"] = True
        return params["payload"]

    orchestrator.register_action("tag", _tag)
    orchestrator.create_rule(
        {
            "name": "Tag motion",
            "conditions": {"eventType": "motion"},
            "actions": [{"type": "tag", "parameters": {"payload": "{{data}}"}}],
        }
    )
    event = orchestrator.bus.publish_event(_event("motion", zone="z1"))
    assert event.data == {"zone": "z1"}
    assert orchestrator.bus.get_events()[-1].data == {"zone": "z1"}


def test_each_ingested_event_is_counted_as_a_flow():
    orchestrator = _orchestrator()
    orchestrator.bus.publish_event(_event(pressed=True))

    stats = orchestrator.get_stats()
    assert stats["total_flows"] == 1
    assert stats["completed_flows"] == 1
    assert stats["failed_flows"] == 0
    assert stats["active_flows"] == 0

    def _broken(event, context=None):
        raise RuntimeError("engine down")

    orchestrator.rule_engine.process_event = _broken
    orchestrator.bus.publish_event(_event(pressed=True))
    stats = orchestrator.get_stats()
    assert stats["total_flows"] == 2
    assert stats["failed_flows"] == 1
    assert stats["active_flows"] == 0


def test_concurrent_publishers_get_one_auto_rule_per_type():
    orchestrator = _orchestrator()
    bus = orchestrator.bus
    bus.start()
    try:
        def _publish(worker):
            for n in range(10):
                bus.publish_event(_event(pressed=True, **{f"field_{n % 4}": worker}))

        threads = [threading.Thread(target=_publish, args=(i,)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert bus.wait_idle(5.0)
    finally:
        bus.stop()

    assert [r.id for r in orchestrator.get_auto_generated_rules()] == ["auto-doorbell-rule"]
    discovered = orchestrator.get_rule("auto-doorbell-rule").metadata.discovered_fields
    assert len(discovered) == len(set(discovered))
    assert set(discovered) <= {"field_0", "field_1", "field_2", "field_3"}
    assert orchestrator.get_stats()["total_flows"] == 50
