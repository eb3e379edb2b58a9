"""
Execution context handed to every action handler.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..models.base import utc_now_iso
from ..models.event import Event
from ..models.flow import Flow
from ..models.rule import Rule


class Connector:
    """
    Interface of the source/sink adapters that actions can drive.

    Adapters expose named capabilities; ``execute`` runs one operation of
    one capability with the given parameters.
    """

    id: str = ""

    def execute(self, capability: str, operation: str, params: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def connect(self) -> Any:
        raise NotImplementedError

    def disconnect(self) -> Any:
        raise NotImplementedError


@dataclass
class ActionContext:
    """
    Everything an action may read while it runs.

    ``event``/``rule`` are set when a rule fires, ``flow``/``input``/``steps``
    when a flow runs. ``connectors``, ``cache``, ``broker`` and ``emit`` are
    the collaborator handles the orchestrator passes through.
    """

    event: Optional[Event] = None
    rule: Optional[Rule] = None
    flow: Optional[Flow] = None
    input: Dict[str, Any] = field(default_factory=dict)
    steps: List[Any] = field(default_factory=list)
    connectors: Mapping[str, Connector] = field(default_factory=dict)
    cache: Any = None
    broker: Any = None
    emit: Optional[Callable[[str, Any], Any]] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def with_services(self, **services: Any) -> "ActionContext":
        return dataclasses.replace(self, **services)

    def notify(self, topic: str, payload: Any) -> None:
        if self.emit is not None:
            self.emit(topic, payload)

    def template_values(self) -> Dict[str, Any]:
        """
        Build the lookup table for ``{{path}}`` tokens.

        Flow input keys and event data keys are also exposed at the top
        level so ``{{zone}}`` works as well as ``{{data.zone}}``. Event
        envelope fields win over data keys of the same name.
        """
        values: Dict[str, Any] = {"timestamp": self.timestamp, "now": self.timestamp}
        if isinstance(self.input, Mapping):
            values.update(self.input)
        values["input"] = self.input
        if self.event is not None:
            values.update(self.event.data)
            values.update(
                {
                    "id": self.event.id,
                    "type": self.event.type,
                    "source": self.event.source,
                    "timestamp": self.event.timestamp,
                    "data": self.event.data,
                    "metadata": self.event.metadata,
                    "event": self.event.model_dump(),
                }
            )
        if self.rule is not None:
            values["rule"] = {"id": self.rule.id, "name": self.rule.name}
        if self.flow is not None:
            values["flow"] = {"id": self.flow.id, "name": self.flow.name}
        values["steps"] = list(self.steps)
        values["previous"] = self.steps[-1] if self.steps else None
        return values


ActionHandler = Callable[[Dict[str, Any], ActionContext], Any]


__all__ = ["Connector", "ActionContext", "ActionHandler"]
