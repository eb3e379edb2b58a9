"""
Discovered event schema: the set of field names seen per event type.

The registry only ever grows. ``observe`` is the single write path and
reports what was new so the caller can announce it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Set

from ..models.event import DiscoveredField


def field_kind(value: Any) -> str:
    """Classify a JSON-ish value the way payload consumers describe it."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, (list, tuple, set)):
        return "array"
    return type(value).__name__


@dataclass
class SchemaChange:
    """Outcome of observing one payload."""

    event_type: str
    new_type: bool = False
    new_fields: List[DiscoveredField] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.new_type or bool(self.new_fields)


class SchemaRegistry:
    """Thread-safe per-event-type field registry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fields: Dict[str, Set[str]] = {}
        self._order: Dict[str, List[str]] = {}

    def observe(self, event_type: str, data: Mapping[str, Any]) -> SchemaChange:
        """
        Record the keys of ``data`` for ``event_type``.

        The first payload of a type becomes its baseline and is reported
        as a new type only. Later payloads report the keys not seen before.
        """
        change = SchemaChange(event_type=event_type)
        with self._lock:
            known = self._fields.get(event_type)
            if known is None:
                self._fields[event_type] = set(data.keys())
                self._order[event_type] = list(data.keys())
                change.new_type = True
                return change
            for key, value in data.items():
                if key in known:
                    continue
                known.add(key)
                self._order[event_type].append(key)
                change.new_fields.append(DiscoveredField(field=key, value=value, kind=field_kind(value)))
        return change

    def is_known(self, event_type: str) -> bool:
        with self._lock:
            return event_type in self._fields

    def event_types(self) -> List[str]:
        with self._lock:
            return list(self._order.keys())

    def fields_for(self, event_type: str) -> List[str]:
        with self._lock:
            return list(self._order.get(event_type, []))

    def snapshot(self) -> Dict[str, List[str]]:
        """Return the schema as ``{event_type: [field names]}``."""
        with self._lock:
            return {event_type: list(names) for event_type, names in self._order.items()}


__all__ = ["field_kind", "SchemaChange", "SchemaRegistry"]
