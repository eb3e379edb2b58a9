"""
Error taxonomy and shared error-handling helpers for the automation core.

Definition problems are raised synchronously to whoever registers the
definition. Per-event and per-step failures are captured close to where
they happen and logged with ``log_exception`` so that one bad rule, step
or action never stops the event path.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

T = TypeVar("T")


class AutomationError(Exception):
    """Base class for every error raised by the automation core."""


class DefinitionError(AutomationError, ValueError):
    """A rule, flow, step or action registration is malformed."""


class InvalidEventError(AutomationError, ValueError):
    """An event is missing one of its required fields."""


class NotFoundError(AutomationError, LookupError):
    """An id does not name a registered record."""


class RuleNotFoundError(NotFoundError):
    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id


class FlowNotFoundError(NotFoundError):
    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow not found: {flow_id}")
        self.flow_id = flow_id


class ActionNotFoundError(NotFoundError):
    def __init__(self, action_type: str) -> None:
        super().__init__(f"Unknown action type: {action_type}")
        self.action_type = action_type


class FlowDisabledError(AutomationError):
    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow is disabled: {flow_id}")
        self.flow_id = flow_id


class StepExecutionError(AutomationError):
    """A flow step failed; the flow records it and moves on."""

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(message)
        self.step_id = step_id


class ActionExecutionError(AutomationError):
    """An action handler raised while executing."""

    def __init__(self, action_type: str, message: str) -> None:
        super().__init__(f"Action {action_type} failed: {message}")
        self.action_type = action_type
        self.reason = message


class SynthesisError(AutomationError):
    """Auto-generating or updating a rule from discovered schema failed."""


class EventBusFullError(AutomationError):
    """The ingest queue stayed full for longer than the enqueue timeout."""


class OrchestratorError(AutomationError):
    """The orchestrator could not be wired up."""


def _format_extra(extra: dict | None) -> str:
    if not extra:
        return ""
    parts: list[str] = []
    for key, value in extra.items():
        if value is None:
            continue
        parts.append(f"{key}={value}")
    return f" {' '.join(parts)}" if parts else ""


def log_exception(logger: logging.Logger, msg: str, *, extra: dict | None = None, exc: Exception | None = None) -> None:
    """
    Log an exception with context. Uses logger.exception for stack traces.
    """
    suffix = _format_extra(extra)
    if exc is not None:
        logger.error(f"{msg}{suffix}: {exc}", exc_info=exc)
        return
    logger.exception(f"{msg}{suffix}")


def guarded_call(
    name: str,
    fn: Callable[[], T],
    *,
    fallback: T | None = None,
    logger: logging.Logger | None = None,
    context: dict | None = None,
) -> T | None:
    """
    Execute fn with logging on failure. Returns fallback if provided.
    """
    try:
        return fn()
    except Exception as exc:
        if logger:
            log_exception(logger, f"{name} failed", extra=context or {}, exc=exc)
        return fallback


__all__ = [
    "AutomationError",
    "DefinitionError",
    "InvalidEventError",
    "NotFoundError",
    "RuleNotFoundError",
    "FlowNotFoundError",
    "ActionNotFoundError",
    "FlowDisabledError",
    "StepExecutionError",
    "ActionExecutionError",
    "SynthesisError",
    "EventBusFullError",
    "OrchestratorError",
    "log_exception",
    "guarded_call",
]
