"""
Predicate evaluation shared by condition steps and ``conditional_action``.

A condition is one of:

- a ``Predicate`` (or mapping) ``{field, op, value}`` tested against a
  dotted path in the values,
- a list of those, all of which must hold,
- a callable receiving the values and returning a truthy result,
- a string naming a dotted path whose value is tested for truthiness,
- a literal boolean.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from .templates import MISSING, lookup_path
from ..models.rule import Predicate
from .errors import DefinitionError


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "exists":
        return actual is not MISSING
    if actual is MISSING:
        return False
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "truthy":
        return bool(actual)
    if op == "in":
        return actual in (expected or ())
    if op == "contains":
        try:
            return expected in actual
        except TypeError:
            return False
    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
    except TypeError:
        return False
    raise DefinitionError(f"Unknown predicate operator: {op}")


def evaluate_condition(condition: Any, values: Mapping[str, Any]) -> bool:
    """Evaluate ``condition`` against ``values``; see the module docstring for forms."""
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, Predicate):
        return _compare(condition.op, lookup_path(values, condition.field), condition.value)
    if isinstance(condition, Mapping):
        return evaluate_condition(Predicate.model_validate(condition), values)
    if isinstance(condition, (list, tuple)):
        return all(evaluate_condition(item, values) for item in condition)
    if isinstance(condition, str):
        found = lookup_path(values, condition)
        return found is not MISSING and bool(found)
    if callable(condition):
        fn: Callable[[Mapping[str, Any]], Any] = condition
        return bool(fn(values))
    if condition is None:
        raise DefinitionError("Condition is required")
    return bool(condition)


__all__ = ["evaluate_condition"]
