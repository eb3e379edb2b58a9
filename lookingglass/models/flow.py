"""
Pydantic models for flows: saved, directly invocable step pipelines.

A step is a tagged union on ``type``; the tag decides which of the four
step shapes a definition is validated against.
"""

from __future__ import annotations

from typing import Annotated, Any, Callable, List, Literal, Optional, Union

from pydantic import Field, field_validator, model_validator

from .base import CamelModel, utc_now_iso
from .rule import ActionInvocation, Predicate


class RuleStep(CamelModel):
    id: str = Field(min_length=1)
    type: Literal["rule"]
    rule_id: str = Field(min_length=1)


class ActionStep(CamelModel):
    id: str = Field(min_length=1)
    type: Literal["action"]
    action: ActionInvocation


class ConditionStep(CamelModel):
    """
    Evaluates a predicate against the flow context.

    ``condition`` may be a predicate mapping, a list of predicate mappings
    (all must hold), a callable taking the context, a dotted path string
    whose value is tested for truthiness, or a literal boolean.
    """

    id: str = Field(min_length=1)
    type: Literal["condition"]
    condition: Any

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return Predicate.model_validate(value)
        if isinstance(value, list):
            return [Predicate.model_validate(item) if isinstance(item, dict) else item for item in value]
        if value is None:
            raise ValueError("condition step requires a condition")
        return value


class TransformSpec(CamelModel):
    type: Literal["template", "function"]
    template: Optional[Any] = None
    function: Optional[Callable[..., Any]] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _check_payload(self) -> "TransformSpec":
        if self.type == "template" and self.template is None:
            raise ValueError("template transform requires a template")
        if self.type == "function" and self.function is None:
            raise ValueError("function transform requires a callable function")
        return self


class TransformStep(CamelModel):
    id: str = Field(min_length=1)
    type: Literal["transform"]
    input: Optional[Any] = None
    transform: TransformSpec


Step = Annotated[Union[RuleStep, ActionStep, ConditionStep, TransformStep], Field(discriminator="type")]

STEP_TYPES = ("rule", "action", "condition", "transform")


class FlowMetadata(CamelModel):
    enabled: bool = True
    category: Optional[str] = None
    auto_generated: bool = False
    event_type: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class Flow(CamelModel):
    """An explicitly invocable, ordered pipeline of steps."""

    id: Optional[str] = None
    name: str = Field(min_length=1)
    description: str = ""
    steps: List[Step] = Field(min_length=1)
    metadata: FlowMetadata = Field(default_factory=FlowMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_to_default(cls, value: Any) -> Any:
        return {} if value is None else value


__all__ = [
    "RuleStep",
    "ActionStep",
    "ConditionStep",
    "TransformSpec",
    "TransformStep",
    "Step",
    "STEP_TYPES",
    "FlowMetadata",
    "Flow",
]
