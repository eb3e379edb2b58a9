"""
Rule engine: registry of condition → action bindings evaluated per event.

Rules are indexed by the event types named in their conditions; rules
without an event type condition are candidates for every event. Matching
rules run their actions sequentially through the engine's action table,
which the orchestrator fills with handlers backed by the action framework.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from ..actions.context import ActionContext, ActionHandler
from ..core.errors import (
    ActionExecutionError,
    AutomationError,
    DefinitionError,
    RuleNotFoundError,
    log_exception,
)
from ..events import topics
from ..events.bus import normalize_event
from ..models.base import new_id, utc_now_iso
from ..models.event import Event
from ..models.rule import Rule
from .conditions import matches

ANY_EVENT_TYPE = "*"


@dataclass
class ActionOutcome:
    """Result of one action of a fired rule."""

    action: str
    success: bool
    result: Any = None
    error: Optional[AutomationError] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"action": self.action, "success": self.success}
        if self.success:
            out["result"] = self.result
        else:
            out["error"] = str(self.error)
        return out


@dataclass
class RuleExecution:
    rule_id: str
    rule_name: str
    event_id: str
    results: List[ActionOutcome] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def errors(self) -> List[AutomationError]:
        return [r.error for r in self.results if r.error is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "event_id": self.event_id,
            "results": [r.to_dict() for r in self.results],
            "timestamp": self.timestamp,
        }


@dataclass
class ProcessResult:
    processed: bool
    rules_matched: int
    executions: List[RuleExecution] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "rules_matched": self.rules_matched,
            "executions": [e.to_dict() for e in self.executions],
        }


def _snake_keys(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {to_snake(key): value for key, value in values.items()}


class RuleEngine:
    """
    Holds rules and fires them for matching events.

    Parameters
    ----------
    emit: callable
        ``emit(topic, payload)`` used for rule lifecycle notifications,
        usually ``EventBus.publish``.
    """

    def __init__(self, emit: Optional[Callable[[str, Any], Any]] = None) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.emit = emit
        self._lock = threading.RLock()
        self._rules: "OrderedDict[str, Rule]" = OrderedDict()
        self._index: Dict[str, Set[str]] = {}
        self._actions: Dict[str, ActionHandler] = {}
        self._rules_executed = 0
        self._actions_executed = 0
        self._errors = 0
        self._last_execution: Optional[str] = None

    def _notify(self, topic: str, payload: Any) -> None:
        if self.emit is not None:
            self.emit(topic, payload)

    # ------------------------------------------------------------------
    # Action table
    # ------------------------------------------------------------------
    def register_action(self, action_type: str, handler: ActionHandler) -> None:
        if not callable(handler):
            raise DefinitionError(f"Action handler for {action_type} must be callable")
        with self._lock:
            self._actions[action_type] = handler

    def unregister_action(self, action_type: str) -> bool:
        with self._lock:
            return self._actions.pop(action_type, None) is not None

    def get_actions(self) -> List[str]:
        with self._lock:
            return list(self._actions.keys())

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    @staticmethod
    def _validate(definition: Rule | Mapping[str, Any]) -> Rule:
        try:
            if isinstance(definition, Rule):
                return Rule.model_validate(definition.model_dump())
            return Rule.model_validate(dict(definition))
        except ValidationError as exc:
            raise DefinitionError(f"Invalid rule definition: {exc}") from exc

    def _index_rule(self, rule: Rule) -> None:
        for event_type in rule.event_types() or [ANY_EVENT_TYPE]:
            self._index.setdefault(event_type, set()).add(rule.id)

    def _unindex_rule(self, rule: Rule) -> None:
        for event_type in rule.event_types() or [ANY_EVENT_TYPE]:
            ids = self._index.get(event_type)
            if ids is None:
                continue
            ids.discard(rule.id)
            if not ids:
                del self._index[event_type]

    def register_rule(self, definition: Rule | Mapping[str, Any]) -> str:
        """Validate and store a rule; returns its id."""
        rule = self._validate(definition)
        custom = definition.conditions.custom if isinstance(definition, Rule) and definition.conditions else None
        if custom is not None and rule.conditions is not None:
            rule.conditions.custom = custom
        now = utc_now_iso()
        rule.metadata.created_at = now
        rule.metadata.updated_at = now
        with self._lock:
            if rule.id is None:
                rule.id = new_id("rule")
            elif rule.id in self._rules:
                raise DefinitionError(f"Rule already registered: {rule.id}")
            self._rules[rule.id] = rule
            self._index_rule(rule)
        self.logger.info("Rule registered: %s (%s)", rule.name, rule.id)
        self._notify(topics.RULE_REGISTERED, rule.model_copy(deep=True))
        return rule.id

    def update_rule(self, rule_id: str, updates: Mapping[str, Any]) -> Rule:
        """
        Merge ``updates`` into a stored rule.

        Top-level fields are replaced; ``metadata`` is merged key by key.
        The rule id never changes.
        """
        with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise RuleNotFoundError(rule_id)
            merged = current.model_dump()
            for key, value in _snake_keys(updates).items():
                if key == "metadata" and isinstance(value, Mapping):
                    merged["metadata"].update(_snake_keys(value))
                else:
                    merged[key] = value
            merged["id"] = rule_id
            merged["metadata"]["created_at"] = current.metadata.created_at
            merged["metadata"]["updated_at"] = utc_now_iso()
            try:
                updated = Rule.model_validate(merged)
            except ValidationError as exc:
                raise DefinitionError(f"Invalid rule update for {rule_id}: {exc}") from exc
            if "conditions" not in updates:
                if current.conditions is not None and updated.conditions is not None:
                    updated.conditions.custom = current.conditions.custom
            self._unindex_rule(current)
            self._rules[rule_id] = updated
            self._index_rule(updated)
        self.logger.info("Rule updated: %s (%s)", updated.name, rule_id)
        self._notify(topics.RULE_UPDATED, updated.model_copy(deep=True))
        return updated.model_copy(deep=True)

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            rule = self._rules.pop(rule_id, None)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            self._unindex_rule(rule)
        self.logger.info("Rule removed: %s (%s)", rule.name, rule_id)
        self._notify(topics.RULE_REMOVED, {"rule_id": rule_id, "name": rule.name})
        return True

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> Rule:
        return self.update_rule(rule_id, {"metadata": {"enabled": enabled}})

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy(deep=True) if rule is not None else None

    def get_rules(self) -> List[Rule]:
        with self._lock:
            return [rule.model_copy(deep=True) for rule in self._rules.values()]

    def get_rules_by_event_type(self, event_type: str) -> List[Rule]:
        with self._lock:
            ids = self._index.get(event_type, set())
            return [rule.model_copy(deep=True) for rid, rule in self._rules.items() if rid in ids]

    def load_rules(self, definitions: Iterable[Rule | Mapping[str, Any]]) -> List[str]:
        loaded = [self.register_rule(definition) for definition in definitions]
        self.logger.info("Loaded %s rules", len(loaded))
        return loaded

    def export_rules(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [rule.to_document() for rule in self._rules.values()]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def _matching_rules(self, event: Event) -> List[Rule]:
        with self._lock:
            candidates = self._index.get(event.type, set()) | self._index.get(ANY_EVENT_TYPE, set())
            snapshot = [
                rule.model_copy(deep=True)
                for rid, rule in self._rules.items()
                if rid in candidates and rule.metadata.enabled
            ]
        matched: List[Rule] = []
        for rule in snapshot:
            try:
                if matches(rule.conditions, event):
                    matched.append(rule)
            except Exception as exc:
                with self._lock:
                    self._errors += 1
                log_exception(self.logger, "Rule condition failed", extra={"rule_id": rule.id, "event_id": event.id}, exc=exc)
        return matched

    def _run_action(self, action_type: str, params: Dict[str, Any], context: ActionContext) -> ActionOutcome:
        with self._lock:
            handler = self._actions.get(action_type)
        if handler is None:
            error = ActionExecutionError(action_type, f"Unknown action type: {action_type}")
            self.logger.error("Rule %s references unknown action %s", context.rule.id if context.rule else None, action_type)
            return ActionOutcome(action=action_type, success=False, error=error)
        try:
            return ActionOutcome(action=action_type, success=True, result=handler(params, context))
        except ActionExecutionError as exc:
            return ActionOutcome(action=action_type, success=False, error=exc)
        except Exception as exc:
            log_exception(self.logger, "Rule action failed", extra={"action": action_type}, exc=exc)
            wrapped = ActionExecutionError(action_type, str(exc))
            wrapped.__cause__ = exc
            return ActionOutcome(action=action_type, success=False, error=wrapped)

    def execute_rule(self, rule: Rule, event: Event, context: Optional[ActionContext] = None) -> RuleExecution:
        """Run every action of ``rule`` for ``event`` in order."""
        context = (context or ActionContext()).with_services(event=event, rule=rule, emit=(context.emit if context else None) or self.emit)
        execution = RuleExecution(rule_id=rule.id or "", rule_name=rule.name, event_id=event.id)
        for invocation in rule.actions:
            outcome = self._run_action(invocation.type, dict(invocation.parameters), context)
            execution.results.append(outcome)
        failed = len(execution.errors)
        with self._lock:
            self._rules_executed += 1
            self._actions_executed += len(execution.results)
            self._errors += failed
            self._last_execution = execution.timestamp
        self.logger.info(
            "Rule executed: %s event=%s actions=%s failed=%s", rule.name, event.id, len(execution.results), failed
        )
        self._notify(topics.RULE_EXECUTED, execution.to_dict())
        return execution

    def process_event(self, event: Event | Mapping[str, Any], context: Optional[ActionContext] = None) -> ProcessResult:
        """
        Fire every enabled rule matching ``event``.

        Action failures are recorded in the returned executions and never
        raised; ``processed`` is False when no rule matched.
        """
        normalized = normalize_event(event)
        matched = self._matching_rules(normalized)
        executions = [self.execute_rule(rule, normalized, context) for rule in matched]
        if not matched:
            self.logger.debug("No rules matched event %s type=%s", normalized.id, normalized.type)
        return ProcessResult(processed=bool(matched), rules_matched=len(matched), executions=executions)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_rules": len(self._rules),
                "rules_executed": self._rules_executed,
                "actions_executed": self._actions_executed,
                "errors": self._errors,
                "last_execution": self._last_execution,
                "actions": len(self._actions),
            }


__all__ = [
    "ANY_EVENT_TYPE",
    "ActionOutcome",
    "RuleExecution",
    "ProcessResult",
    "RuleEngine",
]
