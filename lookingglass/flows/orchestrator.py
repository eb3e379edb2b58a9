"""
Flow orchestrator.

Wires the event bus, the rule engine and the action framework together,
owns the flow registry and runs the discovery loop: a new event type gets
an auto-generated rule, new fields on a known type are appended to it,
and events no rule handles are logged through a one-shot generic flow.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from ..actions.context import ActionContext, ActionHandler, Connector
from ..actions.framework import ActionFramework
from ..actions.notifications import NotificationService
from ..config import Settings
from ..core.errors import (
    DefinitionError,
    FlowDisabledError,
    FlowNotFoundError,
    OrchestratorError,
    StepExecutionError,
    SynthesisError,
    log_exception,
)
from ..events import topics
from ..events.bus import EventBus
from ..events.schema import SchemaRegistry
from ..models.base import new_id, utc_now_iso
from ..models.event import Event, FieldsDiscovery, TypeDiscovery
from ..models.flow import Flow
from ..models.rule import ActionInvocation, Rule
from ..rules.engine import RuleEngine
from ..storage.cache import MemoryCache
from .discovery import auto_rule_id, build_auto_rule, build_generic_flow, merge_new_fields
from .steps import StepRunner


class FlowOrchestrator:
    """
    Central coordinator of the automation core.

    Parameters
    ----------
    settings: Settings
        Loaded configuration; default rules and flows come from here.
    bus, rule_engine, action_framework:
        Collaborators to use instead of the ones built from ``settings``.
    connectors: mapping
        Source/sink adapters keyed by id, exposed to actions.
    cache:
        ``store_data`` backend; an in-memory cache by default.
    broker:
        Publisher used by ``mqtt_publish`` (``publish(topic, payload, qos=, retain=)``).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        bus: Optional[EventBus] = None,
        rule_engine: Optional[RuleEngine] = None,
        action_framework: Optional[ActionFramework] = None,
        connectors: Optional[Mapping[str, Connector]] = None,
        cache: Any = None,
        broker: Any = None,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.settings = settings or Settings()
        if bus is None:
            bus_cfg = self.settings.event_bus
            bus = EventBus(
                SchemaRegistry(),
                max_events=bus_cfg.max_events,
                queue_size=bus_cfg.queue_size,
                enqueue_timeout_sec=bus_cfg.enqueue_timeout_sec,
            )
        self.bus = bus
        self.schema: SchemaRegistry = bus.schema
        self.rule_engine = rule_engine or RuleEngine(emit=self.bus.publish)
        if self.rule_engine.emit is None:
            self.rule_engine.emit = self.bus.publish
        self.action_framework = action_framework or ActionFramework(
            self.settings, notification_service=notification_service
        )
        self.connectors: Dict[str, Connector] = dict(connectors or {})
        self.cache = cache if cache is not None else MemoryCache()
        self.broker = broker
        self.runner = StepRunner(self.rule_engine, self.action_framework)

        self._lock = threading.RLock()
        self._flows: "OrderedDict[str, Flow]" = OrderedDict()
        self._unsubscribers: List[Callable[[], bool]] = []
        self._initialized = False
        self._total_flows = 0
        self._active_flows = 0
        self._completed_flows = 0
        self._failed_flows = 0
        self._last_flow: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """
        Subscribe to the bus, share the action table with the engine and
        load the configured rules and flows. Raises ``OrchestratorError``.
        """
        if self._initialized:
            return
        try:
            self._unsubscribers = [
                self.bus.subscribe(topics.TYPE_DISCOVERED, self.handle_type_discovered),
                self.bus.subscribe(topics.FIELDS_DISCOVERED, self.handle_fields_discovered),
                self.bus.subscribe(topics.EVENT, self.handle_event),
            ]
            self.sync_actions()
            self.rule_engine.load_rules(self.settings.rules)
            for definition in self.settings.flows:
                self.create_flow(definition)
        except Exception as exc:
            self._unsubscribe_all()
            log_exception(self.logger, "Flow orchestrator initialization failed", exc=exc)
            raise OrchestratorError(f"Failed to initialize flow orchestrator: {exc}") from exc
        self._initialized = True
        self.logger.info(
            "Flow orchestrator initialized rules=%s flows=%s actions=%s",
            len(self.rule_engine.get_rules()),
            len(self._flows),
            len(self.action_framework.get_available_actions()),
        )

    def shutdown(self) -> None:
        self._unsubscribe_all()
        self.bus.stop()
        self._initialized = False
        self.logger.info("Flow orchestrator stopped")

    def _unsubscribe_all(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    # ------------------------------------------------------------------
    # Actions and services
    # ------------------------------------------------------------------
    def _with_services(self, context: ActionContext) -> ActionContext:
        return context.with_services(
            connectors=self.connectors,
            cache=self.cache,
            broker=self.broker,
            emit=context.emit or self.bus.publish,
        )

    def _engine_handler(self, action_type: str) -> ActionHandler:
        def handler(params: Dict[str, Any], context: ActionContext) -> Any:
            invocation = ActionInvocation(type=action_type, parameters=params)
            return self.action_framework.execute_action(invocation, self._with_services(context))

        return handler

    def sync_actions(self) -> None:
        """Expose every framework action to the rule engine."""
        for action_type in self.action_framework.get_available_actions():
            self.rule_engine.register_action(action_type, self._engine_handler(action_type))

    def register_action(self, action_type: str, handler: ActionHandler) -> None:
        self.action_framework.register_action(action_type, handler)
        self.rule_engine.register_action(action_type, self._engine_handler(action_type))

    def register_connector(self, connector_id: str, connector: Connector) -> None:
        self.connectors[connector_id] = connector

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    def handle_event(self, event: Event) -> None:
        """
        Run rules for ``event``, falling back to the generic flow.

        Every ingested event counts as one flow: completed when rules
        handled it or the generic flow ran clean, failed when processing
        raised or a generic step failed.
        """
        started = utc_now_iso()
        with self._lock:
            self._total_flows += 1
            self._active_flows += 1
        flow_id: Optional[str] = None
        failures = 0
        try:
            result = self.rule_engine.process_event(event, self._with_services(ActionContext()))
            if result.rules_matched == 0:
                flow_id, _, failures = self._process_generic(event)
        except Exception as exc:
            failures += 1
            log_exception(self.logger, "Rule processing failed", extra={"event_id": event.id, "type": event.type}, exc=exc)
        finally:
            self._finish_flow(flow_id, started, failures)

    def process_generic_event(self, event: Event) -> List[Any]:
        """Log an event no rule handled through a one-shot, unregistered flow."""
        _, results, _ = self._process_generic(event)
        return results

    def _process_generic(self, event: Event) -> Tuple[str, List[Any], int]:
        flow = Flow.model_validate(build_generic_flow(event))
        self.logger.info("Processing generic event %s from %s", event.type, event.source)
        results, failures = self._execute_steps(flow, {"event": event.to_document(), "data": dict(event.data)})
        self.bus.publish(
            topics.GENERIC_PROCESSED,
            {"event_type": event.type, "source": event.source, "timestamp": event.timestamp, "flow_id": flow.id},
        )
        return flow.id, results, failures

    def _synthesis_failed(self, msg: str, event_type: str, exc: Exception) -> None:
        error = SynthesisError(f"{msg}: {exc}")
        error.__cause__ = exc
        log_exception(self.logger, msg, extra={"event_type": event_type}, exc=error)

    def handle_type_discovered(self, discovery: TypeDiscovery) -> None:
        event_type = discovery.event_type
        rule_id = auto_rule_id(event_type)
        if self.rule_engine.get_rule(rule_id) is not None:
            return
        try:
            self.rule_engine.register_rule(build_auto_rule(event_type, discovery.sample_data))
        except Exception as exc:
            self._synthesis_failed("Rule synthesis failed", event_type, exc)
            return
        rule = self.rule_engine.get_rule(rule_id)
        self.logger.info("Auto-generated rule for event type: %s", event_type)
        self.bus.publish(
            topics.RULE_AUTO_GENERATED,
            {"rule_id": rule_id, "event_type": event_type, "rule": rule.to_document() if rule else None},
        )

    def handle_fields_discovered(self, discovery: FieldsDiscovery) -> None:
        names = discovery.field_names
        for rule in self.rule_engine.get_rules_by_event_type(discovery.event_type):
            if not rule.metadata.auto_generated:
                continue
            try:
                updates = merge_new_fields(rule, names)
                if updates is None:
                    continue
                self.rule_engine.update_rule(rule.id, updates)
            except Exception as exc:
                self._synthesis_failed("Rule field update failed", discovery.event_type, exc)
                continue
            self.logger.info("Updated auto-generated rule %s with new fields: %s", rule.id, ", ".join(names))

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_flow(definition: Flow | Mapping[str, Any]) -> Flow:
        if isinstance(definition, Flow):
            return definition.model_copy(deep=True)
        try:
            return Flow.model_validate(dict(definition))
        except ValidationError as exc:
            raise DefinitionError(f"Invalid flow definition: {exc}") from exc

    def create_flow(self, definition: Flow | Mapping[str, Any]) -> str:
        flow = self._validate_flow(definition)
        now = utc_now_iso()
        flow.metadata.created_at = now
        flow.metadata.updated_at = now
        with self._lock:
            if flow.id is None:
                flow.id = new_id("flow")
            elif flow.id in self._flows:
                raise DefinitionError(f"Flow already exists: {flow.id}")
            self._flows[flow.id] = flow
        self.logger.info("Flow created: %s (%s)", flow.name, flow.id)
        self.bus.publish(topics.FLOW_CREATED, flow.model_copy(deep=True))
        return flow.id

    def update_flow(self, flow_id: str, updates: Mapping[str, Any]) -> Flow:
        """Replace top-level fields of a flow and merge its metadata."""
        with self._lock:
            current = self._flows.get(flow_id)
            if current is None:
                raise FlowNotFoundError(flow_id)
            base = current.model_copy(deep=True)
            merged: Dict[str, Any] = {name: getattr(base, name) for name in Flow.model_fields}
            metadata = base.metadata.model_dump()
            for key, value in updates.items():
                key = to_snake(key)
                if key == "metadata" and isinstance(value, Mapping):
                    metadata.update({to_snake(k): v for k, v in value.items()})
                elif key != "id":
                    merged[key] = value
            metadata["created_at"] = current.metadata.created_at
            metadata["updated_at"] = utc_now_iso()
            merged["metadata"] = metadata
            try:
                updated = Flow.model_validate(merged)
            except ValidationError as exc:
                raise DefinitionError(f"Invalid flow update for {flow_id}: {exc}") from exc
            self._flows[flow_id] = updated
        self.logger.info("Flow updated: %s (%s)", updated.name, flow_id)
        self.bus.publish(topics.FLOW_UPDATED, updated.model_copy(deep=True))
        return updated.model_copy(deep=True)

    def delete_flow(self, flow_id: str) -> bool:
        with self._lock:
            flow = self._flows.pop(flow_id, None)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        self.logger.info("Flow deleted: %s (%s)", flow.name, flow_id)
        self.bus.publish(topics.FLOW_DELETED, {"flow_id": flow_id, "name": flow.name})
        return True

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._lock:
            flow = self._flows.get(flow_id)
            return flow.model_copy(deep=True) if flow is not None else None

    def get_flows(self) -> List[Flow]:
        with self._lock:
            return [flow.model_copy(deep=True) for flow in self._flows.values()]

    def execute_flow(self, flow_id: str, input: Optional[Mapping[str, Any]] = None) -> List[Any]:
        """
        Run a registered flow's steps in order and return their results.

        A failing step contributes ``{"error": message}`` and later steps
        still run.
        """
        flow = self.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        if not flow.metadata.enabled:
            raise FlowDisabledError(flow_id)
        return self._run_flow(flow, input)

    def _run_flow(self, flow: Flow, input: Optional[Mapping[str, Any]]) -> List[Any]:
        started = utc_now_iso()
        with self._lock:
            self._total_flows += 1
            self._active_flows += 1
        failures = 1
        try:
            results, failures = self._execute_steps(flow, input)
        finally:
            self._finish_flow(flow.id, started, failures)
        return results

    def _finish_flow(self, flow_id: Optional[str], started: str, failures: int) -> None:
        with self._lock:
            self._active_flows -= 1
            if failures:
                self._failed_flows += 1
            else:
                self._completed_flows += 1
            self._last_flow = {"flow_id": flow_id, "started_at": started, "failed_steps": failures}

    def _execute_steps(self, flow: Flow, input: Optional[Mapping[str, Any]]) -> Tuple[List[Any], int]:
        context = self._with_services(ActionContext(flow=flow, input=dict(input or {})))
        results: List[Any] = []
        failures = 0
        for step in flow.steps:
            try:
                result = self.runner.run(step, context.with_services(steps=list(results)))
            except StepExecutionError as exc:
                failures += 1
                log_exception(self.logger, "Flow step failed", extra={"flow_id": flow.id, "step_id": exc.step_id}, exc=exc)
                result = {"error": str(exc)}
            results.append(result)
        self.logger.info("Flow executed: %s (%s) steps=%s failed=%s", flow.name, flow.id, len(results), failures)
        self.bus.publish(
            topics.FLOW_EXECUTED,
            {"flow_id": flow.id, "input": dict(input or {}), "results": results, "timestamp": utc_now_iso()},
        )
        return results, failures

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    def get_rules(self) -> List[Rule]:
        return self.rule_engine.get_rules()

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rule_engine.get_rule(rule_id)

    def create_rule(self, definition: Rule | Mapping[str, Any]) -> str:
        return self.rule_engine.register_rule(definition)

    def update_rule(self, rule_id: str, updates: Mapping[str, Any]) -> Rule:
        return self.rule_engine.update_rule(rule_id, updates)

    def delete_rule(self, rule_id: str) -> bool:
        return self.rule_engine.delete_rule(rule_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def get_discovered_event_types(self) -> List[str]:
        return self.schema.event_types()

    def get_discovered_fields(self) -> Dict[str, List[str]]:
        return self.schema.snapshot()

    def get_auto_generated_rules(self) -> List[Rule]:
        return [rule for rule in self.rule_engine.get_rules() if rule.metadata.auto_generated]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = {
                "total_flows": self._total_flows,
                "active_flows": self._active_flows,
                "completed_flows": self._completed_flows,
                "failed_flows": self._failed_flows,
                "last_flow": dict(self._last_flow) if self._last_flow else None,
                "flows": len(self._flows),
            }
        stats["event_bus"] = self.bus.get_stats()
        stats["rule_engine"] = self.rule_engine.get_stats()
        stats["action_framework"] = self.action_framework.get_stats()
        return stats

    def export_state(self) -> Dict[str, Any]:
        """Rules and flows keyed by id plus the discovered schema."""
        with self._lock:
            flows = {flow_id: flow.to_document() for flow_id, flow in self._flows.items()}
        rules = {doc["id"]: doc for doc in self.rule_engine.export_rules()}
        return {
            "rules": rules,
            "flows": flows,
            "discovered_schema": self.schema.snapshot(),
            "exported_at": utc_now_iso(),
        }


__all__ = ["FlowOrchestrator"]
