"""
Record models for the automation core: events, rules and flows.
"""

from .base import CamelModel, new_id, utc_now_iso
from .event import DiscoveredField, Event, FieldsDiscovery, TypeDiscovery
from .rule import ActionInvocation, Predicate, Rule, RuleConditions, RuleMetadata, TimeRange
from .flow import (
    ActionStep,
    ConditionStep,
    Flow,
    FlowMetadata,
    RuleStep,
    Step,
    STEP_TYPES,
    TransformSpec,
    TransformStep,
)

__all__ = [
    'CamelModel',
    'new_id',
    'utc_now_iso',
    'Event',
    'DiscoveredField',
    'TypeDiscovery',
    'FieldsDiscovery',
    'ActionInvocation',
    'Predicate',
    'Rule',
    'RuleConditions',
    'RuleMetadata',
    'TimeRange',
    'ActionStep',
    'ConditionStep',
    'Flow',
    'FlowMetadata',
    'RuleStep',
    'Step',
    'STEP_TYPES',
    'TransformSpec',
    'TransformStep',
]
