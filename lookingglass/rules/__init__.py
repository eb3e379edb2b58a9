"""
Rules package.

Standing condition → action bindings: the condition matcher and the
engine that registers rules and fires them for matching events.
"""

from .conditions import matches
from .engine import ActionOutcome, ProcessResult, RuleEngine, RuleExecution

__all__ = [
    'matches',
    'ActionOutcome',
    'ProcessResult',
    'RuleEngine',
    'RuleExecution',
]
