"""
Pydantic models for events and the discovery notifications derived from them.

Events are produced by source adapters (cameras, MQTT bridges, aircraft
feeds) or re-injected by analytics and are frozen once published: the
bus, the rule engine and every action see the same record.
"""

from __future__ import annotations

import datetime
from typing import Any, Dict, List

from pydantic import ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .base import CamelModel, new_id, utc_now_iso


class Event(CamelModel):
    """Immutable record of an external occurrence."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: new_id("event"))
    type: str = Field(min_length=1)
    source: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        if isinstance(value, datetime.datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=datetime.timezone.utc)
            return value.isoformat()
        return value

    @field_validator("data", "metadata", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def parsed_timestamp(self) -> datetime.datetime | None:
        """Return the timestamp as a datetime, or None when it is not ISO-8601."""
        raw = self.timestamp
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return datetime.datetime.fromisoformat(raw)
        except ValueError:
            return None


class DiscoveredField(CamelModel):
    """A field seen for the first time on a known event type."""

    field: str
    value: Any = None
    kind: str


class TypeDiscovery(CamelModel):
    """Payload of ``eventType:discovered``."""

    event_type: str
    timestamp: str = Field(default_factory=utc_now_iso)
    sample_data: Dict[str, Any] = Field(default_factory=dict)


class FieldsDiscovery(CamelModel):
    """Payload of ``fields:discovered``."""

    event_type: str
    new_fields: List[DiscoveredField]
    timestamp: str = Field(default_factory=utc_now_iso)

    @property
    def field_names(self) -> List[str]:
        return [f.field for f in self.new_fields]


__all__ = [
    "Event",
    "DiscoveredField",
    "TypeDiscovery",
    "FieldsDiscovery",
]
