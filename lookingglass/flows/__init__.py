"""
Flows package.

Explicitly invocable step pipelines, the step interpreter and the
orchestrator that wires the bus, the rule engine and the actions together.
"""

from .discovery import auto_rule_id, build_auto_rule, build_generic_flow, merge_new_fields
from .orchestrator import FlowOrchestrator
from .steps import StepRunner

__all__ = [
    'auto_rule_id',
    'build_auto_rule',
    'build_generic_flow',
    'merge_new_fields',
    'FlowOrchestrator',
    'StepRunner',
]
