"""
Condition matching for rules.

All clauses present on ``RuleConditions`` must hold for an event to match;
a rule without conditions matches every event.
"""

from __future__ import annotations

import datetime
from typing import Any, Optional

from ..core.errors import DefinitionError
from ..core.templates import MISSING, lookup_path
from ..models.event import Event
from ..models.rule import RuleConditions, TimeRange


def _parse_time_string(time_str: str) -> datetime.time:
    """Parse a HH:MM string into a datetime.time object."""
    try:
        return datetime.datetime.strptime(time_str, "%H:%M").time()
    except ValueError as exc:
        raise DefinitionError(f"Invalid time of day {time_str!r}, expected HH:MM") from exc


def _is_time_in_range(
    now_time: datetime.time,
    start_time: Optional[datetime.time],
    end_time: Optional[datetime.time],
) -> bool:
    """
    Determine if ``now_time`` lies within the closed interval
    [start_time, end_time]. Handles intervals that span midnight; a
    missing bound leaves that side open.
    """
    if start_time is None and end_time is None:
        return True
    if start_time is None:
        return now_time <= end_time
    if end_time is None:
        return now_time >= start_time
    if start_time <= end_time:
        return start_time <= now_time <= end_time
    # Interval spans midnight
    return now_time >= start_time or now_time <= end_time


def _time_matches(window: TimeRange, event: Event) -> bool:
    ts = event.parsed_timestamp()
    if ts is None:
        return False
    start = _parse_time_string(window.start) if window.start else None
    end = _parse_time_string(window.end) if window.end else None
    return _is_time_in_range(ts.time().replace(second=0, microsecond=0), start, end)


def _data_matches(expected: dict, data: Any) -> bool:
    for path, value in expected.items():
        found = lookup_path(data, path)
        if found is MISSING or found != value:
            return False
    return True


def matches(conditions: Optional[RuleConditions], event: Event) -> bool:
    """Return True when ``event`` satisfies every clause of ``conditions``."""
    if conditions is None:
        return True
    event_types = conditions.event_types()
    if event_types and event.type not in event_types:
        return False
    sources = conditions.sources()
    if sources and event.source not in sources:
        return False
    if conditions.time_range is not None and not _time_matches(conditions.time_range, event):
        return False
    if conditions.data and not _data_matches(conditions.data, event.data):
        return False
    if conditions.custom is not None:
        return bool(conditions.custom(event))
    return True


__all__ = ["matches"]
