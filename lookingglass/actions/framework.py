"""
Action framework: registry and executor of named side-effecting operations.

Handlers share one signature, ``handler(parameters, context)``. Parameters
are template-resolved against the context before the handler sees them.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from ..config import Settings
from ..core.errors import ActionExecutionError, ActionNotFoundError, DefinitionError, log_exception
from ..core.templates import resolve_template
from ..models.base import utc_now_iso
from ..models.rule import ActionInvocation
from .builtin import register_builtin_actions
from .context import ActionContext, ActionHandler
from .notifications import NotificationService


def as_invocation(invocation: ActionInvocation | Mapping[str, Any]) -> ActionInvocation:
    if isinstance(invocation, ActionInvocation):
        return invocation
    try:
        return ActionInvocation.model_validate(invocation)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid action invocation: {exc}") from exc


class ActionFramework:
    """
    Dispatch table of action handlers.

    Parameters
    ----------
    settings: Settings
        Limits and delivery settings passed to the built-in actions.
    register_builtins: bool
        Register the standard action set on construction.
    notification_service: NotificationService
        Overrides the channel providers built from ``settings``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        register_builtins: bool = True,
        notification_service: Optional[NotificationService] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.settings = settings or Settings()
        self._lock = threading.RLock()
        self._actions: Dict[str, ActionHandler] = {}
        self._total = 0
        self._succeeded = 0
        self._failed = 0
        self._last_execution: Optional[Dict[str, Any]] = None
        if register_builtins:
            register_builtin_actions(self, self.settings, notification_service)
            self.logger.info("Action framework ready with %s actions", len(self._actions))

    def register_action(self, action_type: str, handler: ActionHandler) -> None:
        if not action_type:
            raise DefinitionError("Action type is required")
        if not callable(handler):
            raise DefinitionError(f"Action handler for {action_type} must be callable")
        with self._lock:
            replaced = action_type in self._actions
            self._actions[action_type] = handler
        if replaced:
            self.logger.info("Action re-registered: %s", action_type)
        else:
            self.logger.debug("Action registered: %s", action_type)

    def unregister_action(self, action_type: str) -> None:
        with self._lock:
            if action_type not in self._actions:
                raise ActionNotFoundError(action_type)
            del self._actions[action_type]
        self.logger.info("Action unregistered: %s", action_type)

    def has_action(self, action_type: str) -> bool:
        with self._lock:
            return action_type in self._actions

    def get_handler(self, action_type: str) -> ActionHandler:
        with self._lock:
            handler = self._actions.get(action_type)
        if handler is None:
            raise ActionNotFoundError(action_type)
        return handler

    def get_available_actions(self) -> List[str]:
        with self._lock:
            return sorted(self._actions.keys())

    def execute_action(
        self,
        invocation: ActionInvocation | Mapping[str, Any],
        context: Optional[ActionContext] = None,
        *,
        resolve: bool = True,
    ) -> Any:
        """
        Resolve the invocation's parameters and run its handler.

        ``resolve=False`` passes parameters through untouched, for nested
        invocations whose parameters were resolved by the outer action.

        Raises ``ActionNotFoundError`` for an unregistered type and
        ``ActionExecutionError`` (chained to the cause) when the handler
        raises.
        """
        action = as_invocation(invocation)
        context = context or ActionContext()
        handler = self.get_handler(action.type)
        params = copy.deepcopy(action.parameters)
        if resolve:
            params = resolve_template(params, context.template_values())
        started = utc_now_iso()
        try:
            result = handler(params, context)
        except ActionExecutionError as exc:
            self._track(action.type, started, ok=False, error=str(exc))
            raise
        except Exception as exc:
            self._track(action.type, started, ok=False, error=str(exc))
            log_exception(
                self.logger,
                "Action execution failed",
                extra={"action": action.type, "rule": context.rule.id if context.rule else None},
                exc=exc,
            )
            raise ActionExecutionError(action.type, str(exc)) from exc
        self._track(action.type, started, ok=True)
        return result

    def _track(self, action_type: str, started: str, *, ok: bool, error: Optional[str] = None) -> None:
        with self._lock:
            self._total += 1
            if ok:
                self._succeeded += 1
            else:
                self._failed += 1
            self._last_execution = {"action": action_type, "success": ok, "timestamp": started}
            if error:
                self._last_execution["error"] = error

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_executions": self._total,
                "successful_executions": self._succeeded,
                "failed_executions": self._failed,
                "last_execution": dict(self._last_execution) if self._last_execution else None,
                "available_actions": len(self._actions),
            }


__all__ = ["ActionFramework", "as_invocation"]
