"""
Step interpreter for flows.

Each step kind has one runner taking the step and the flow's
``ActionContext``. Runners raise on failure; the orchestrator records the
error in place of the step result and moves on to the next step.
"""

from __future__ import annotations

from typing import Any, Callable, Dict

from ..actions.builtin import apply_transform
from ..actions.context import ActionContext
from ..actions.framework import ActionFramework
from ..core.errors import RuleNotFoundError, StepExecutionError
from ..core.predicates import evaluate_condition
from ..core.templates import resolve_template
from ..models.base import new_id, utc_now_iso
from ..models.event import Event
from ..models.flow import ActionStep, ConditionStep, RuleStep, TransformStep
from ..models.rule import Predicate
from ..rules.engine import RuleEngine

FLOW_EVENT_TYPE = "flow_execution"
FLOW_EVENT_SOURCE = "flow_orchestrator"


def _describe(condition: Any) -> Any:
    if isinstance(condition, Predicate):
        return condition.to_document()
    if isinstance(condition, list):
        return [_describe(item) for item in condition]
    if callable(condition):
        return getattr(condition, "__name__", repr(condition))
    return condition


class StepRunner:
    """Runs flow steps against the rule engine and the action framework."""

    def __init__(self, rule_engine: RuleEngine, action_framework: ActionFramework) -> None:
        self.rule_engine = rule_engine
        self.action_framework = action_framework
        self._runners: Dict[str, Callable[[Any, ActionContext], Any]] = {
            "rule": self.run_rule_step,
            "action": self.run_action_step,
            "condition": self.run_condition_step,
            "transform": self.run_transform_step,
        }

    def run(self, step: Any, context: ActionContext) -> Any:
        """Run one step; any failure is raised as ``StepExecutionError``."""
        step_id = getattr(step, "id", "?")
        runner = self._runners.get(getattr(step, "type", None))
        if runner is None:
            raise StepExecutionError(step_id, f"Unknown step type: {getattr(step, 'type', None)}")
        try:
            return runner(step, context)
        except StepExecutionError:
            raise
        except Exception as exc:
            raise StepExecutionError(step_id, str(exc)) from exc

    def run_rule_step(self, step: RuleStep, context: ActionContext) -> Dict[str, Any]:
        """
        Route a transient event built from the flow input through the engine.

        The event takes the first event type and source named by the
        referenced rule's conditions so the rule can match it.
        """
        rule = self.rule_engine.get_rule(step.rule_id)
        if rule is None:
            raise RuleNotFoundError(step.rule_id)
        event_types = rule.event_types()
        sources = rule.conditions.sources() if rule.conditions else []
        event = Event(
            id=new_id("flow-event"),
            type=event_types[0] if event_types else FLOW_EVENT_TYPE,
            source=sources[0] if sources else FLOW_EVENT_SOURCE,
            timestamp=utc_now_iso(),
            data=dict(context.input or {}),
            metadata={"flow_id": context.flow.id if context.flow else None, "step_id": step.id},
        )
        return self.rule_engine.process_event(event, context).to_dict()

    def run_action_step(self, step: ActionStep, context: ActionContext) -> Any:
        return self.action_framework.execute_action(step.action, context)

    def run_condition_step(self, step: ConditionStep, context: ActionContext) -> Dict[str, Any]:
        result = evaluate_condition(step.condition, context.template_values())
        return {"condition": _describe(step.condition), "result": result, "timestamp": utc_now_iso()}

    def run_transform_step(self, step: TransformStep, context: ActionContext) -> Dict[str, Any]:
        if step.input is not None:
            source = resolve_template(step.input, context.template_values())
        else:
            source = context.input
        spec = {"type": step.transform.type, "template": step.transform.template, "function": step.transform.function}
        output = apply_transform(source, spec, context)
        return {"transformed": True, "input": source, "output": output, "timestamp": utc_now_iso()}


__all__ = ["StepRunner", "FLOW_EVENT_TYPE", "FLOW_EVENT_SOURCE"]
