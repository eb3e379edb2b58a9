"""
Pydantic models for rules, their conditions and the action invocations
they trigger.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import Field, field_validator

from .base import CamelModel, utc_now_iso


PredicateOp = Literal["exists", "eq", "ne", "gt", "gte", "lt", "lte", "in", "contains", "truthy"]


class Predicate(CamelModel):
    """
    A single comparison against a dotted path in an execution context.

    ``{"field": "input.zone", "op": "eq", "value": "z1"}`` holds when the
    value found at ``input.zone`` equals ``"z1"``.
    """

    field: str
    op: PredicateOp = "eq"
    value: Any = None


class TimeRange(CamelModel):
    start: Optional[str] = None
    end: Optional[str] = None


class RuleConditions(CamelModel):
    """Clauses that must all hold for a rule to match an event."""

    event_type: Optional[Union[str, List[str]]] = None
    source: Optional[Union[str, List[str]]] = None
    data: Optional[Dict[str, Any]] = None
    time_range: Optional[TimeRange] = None
    custom: Optional[Callable[..., bool]] = Field(default=None, exclude=True)

    def event_types(self) -> List[str]:
        if self.event_type is None:
            return []
        if isinstance(self.event_type, str):
            return [self.event_type]
        return list(self.event_type)

    def sources(self) -> List[str]:
        if self.source is None:
            return []
        if isinstance(self.source, str):
            return [self.source]
        return list(self.source)


class ActionInvocation(CamelModel):
    """A named action plus the parameters it is called with."""

    type: str = Field(min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class RuleMetadata(CamelModel):
    enabled: bool = True
    category: Optional[str] = None
    auto_generated: bool = False
    event_type: Optional[str] = None
    discovered_fields: List[str] = Field(default_factory=list)
    priority: Optional[int] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class Rule(CamelModel):
    """A standing condition → action binding evaluated against every event."""

    id: Optional[str] = None
    name: str = Field(min_length=1)
    description: str = ""
    conditions: Optional[RuleConditions] = None
    actions: List[ActionInvocation] = Field(min_length=1)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_default(cls, value: Any) -> Any:
        return {} if value is None else value

    def event_types(self) -> List[str]:
        return self.conditions.event_types() if self.conditions else []


__all__ = [
    "Predicate",
    "TimeRange",
    "RuleConditions",
    "ActionInvocation",
    "RuleMetadata",
    "Rule",
]
