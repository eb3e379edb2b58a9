"""
Central event bus.

Adapters call ``publish_event`` for every external occurrence. Events are
normalized, recorded, and then dispatched by a single consumer so that
every subscriber sees them in publish order. Dispatch of one event runs
schema discovery first, then the generic ``event`` channel, then the
type-qualified and source-qualified channels, and finally the pattern
subscribers registered with ``subscribe_events`` (a type-or-source string,
a compiled regular expression or a predicate on the event).

Notifications (rule and flow lifecycle, discovery) use ``publish`` and are
delivered synchronously on the publishing thread.
"""

from __future__ import annotations

import datetime
import itertools
import logging
import queue
import re
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Pattern, Tuple, Union

from pydantic import ValidationError

from ..core.errors import EventBusFullError, InvalidEventError, log_exception
from ..models.event import Event, FieldsDiscovery, TypeDiscovery
from . import topics
from .schema import SchemaRegistry

Handler = Callable[[Any], Any]
EventPattern = Union[str, Pattern[str], Callable[[Event], bool]]

REQUIRED_FIELDS = ("type", "source", "timestamp")


def _as_utc(ts: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=datetime.timezone.utc)
    return ts


def normalize_event(raw: Event | Mapping[str, Any]) -> Event:
    """Validate required fields and build a frozen Event."""
    if isinstance(raw, Event):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidEventError(f"Event must be a mapping, got {type(raw).__name__}")
    missing = [name for name in REQUIRED_FIELDS if not raw.get(name)]
    if missing:
        raise InvalidEventError(f"Event missing required fields: {', '.join(missing)}")
    try:
        return Event.model_validate(dict(raw))
    except ValidationError as exc:
        raise InvalidEventError(str(exc)) from exc


def matches_pattern(event: Event, pattern: EventPattern) -> bool:
    """True when ``pattern`` selects ``event`` by type or source."""
    if isinstance(pattern, str):
        return event.type == pattern or event.source == pattern
    if isinstance(pattern, re.Pattern):
        return bool(pattern.search(event.type) or pattern.search(event.source))
    if callable(pattern):
        return bool(pattern(event))
    return False


class EventBus:
    """
    Typed publish/subscribe channels with a bounded ingest queue.

    Parameters
    ----------
    schema: SchemaRegistry
        Discovered-field registry consulted on every dispatch. Callers that
        need read access (the orchestrator) pass their own instance.
    max_events: int
        Number of recent events kept for ``get_events``.
    queue_size: int
        Capacity of the ingest queue used once ``start`` has been called.
    enqueue_timeout_sec: float
        How long ``publish_event`` waits for room in a full queue.
    """

    def __init__(
        self,
        schema: Optional[SchemaRegistry] = None,
        *,
        max_events: int = 1000,
        queue_size: int = 1000,
        enqueue_timeout_sec: float = 5.0,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.schema = schema if schema is not None else SchemaRegistry()
        self.enqueue_timeout_sec = enqueue_timeout_sec
        self._subscribers: Dict[str, Dict[int, Handler]] = {}
        self._pattern_subscribers: Dict[int, Tuple[EventPattern, Handler]] = {}
        self._sub_ids = itertools.count(1)
        self._sub_lock = threading.Lock()
        self._history: Deque[Event] = deque(maxlen=max_events)
        self._stats_lock = threading.Lock()
        self._total_events = 0
        self._events_by_type: Dict[str, int] = {}
        self._events_by_source: Dict[str, int] = {}
        self._last_event_time: Optional[str] = None
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=queue_size)
        self._dispatch_lock = threading.RLock()
        self._stop_flag = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the dispatcher thread. Until then events dispatch inline."""
        if self.running:
            return
        self._stop_flag.clear()
        self._thread = threading.Thread(target=self._run, name="EventBusDispatcher", daemon=True)
        self._thread.start()
        self.logger.info("Event bus dispatcher started queue_size=%s", self._queue.maxsize)

    def stop(self, timeout: float = 5.0) -> None:
        """Drain pending events (bounded by ``timeout``) and stop the dispatcher."""
        if self._thread is None:
            return
        if not self.wait_idle(timeout):
            self.logger.warning("Stopping event bus with %s events still queued", self._queue.qsize())
        self._stop_flag.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        self.logger.info("Event bus dispatcher stopped")

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Block until every queued event has been dispatched or ``timeout`` expires."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _run(self) -> None:
        while not self._stop_flag.is_set():
            try:
                event = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._dispatch_event(event)
            except Exception as exc:
                log_exception(self.logger, "Event dispatch failed", extra={"event_id": event.id, "type": event.type}, exc=exc)
            finally:
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def publish_event(self, event: Event | Mapping[str, Any]) -> Event:
        """
        Publish an event from an adapter or a derived processor.

        Raises ``InvalidEventError`` when ``type``, ``source`` or
        ``timestamp`` is missing and ``EventBusFullError`` when the ingest
        queue has no room within ``enqueue_timeout_sec``.
        """
        normalized = normalize_event(event)
        if self.running:
            try:
                self._queue.put(normalized, timeout=self.enqueue_timeout_sec)
            except queue.Full as exc:
                self.logger.error("Event queue full; rejecting event %s type=%s", normalized.id, normalized.type)
                raise EventBusFullError(f"Event queue full; rejected {normalized.id}") from exc
        else:
            self._dispatch_event(normalized)
        self.logger.debug("Event published: %s from %s", normalized.type, normalized.source)
        return normalized

    def _dispatch_event(self, event: Event) -> None:
        with self._dispatch_lock:
            self._record(event)
            change = self.schema.observe(event.type, event.data)
            if change.new_type:
                self.logger.warning("New event type discovered: %s", event.type)
                self.publish(
                    topics.TYPE_DISCOVERED,
                    TypeDiscovery(event_type=event.type, timestamp=event.timestamp, sample_data=dict(event.data)),
                )
            if change.new_fields:
                discovery = FieldsDiscovery(event_type=event.type, new_fields=change.new_fields, timestamp=event.timestamp)
                self.logger.warning(
                    "New fields discovered for %s: %s", event.type, ", ".join(discovery.field_names)
                )
                self.publish(topics.FIELDS_DISCOVERED, discovery)
            self.publish(topics.EVENT, event)
            self.publish(topics.event_type_channel(event.type), event)
            self.publish(topics.event_source_channel(event.source, event.type), event)
            self._publish_to_patterns(event)

    def publish(self, topic: str, payload: Any) -> int:
        """
        Deliver ``payload`` to every subscriber of ``topic``.

        A failing subscriber is logged and does not affect the others.
        Returns the number of subscribers that handled the payload.
        """
        with self._sub_lock:
            handlers = list(self._subscribers.get(topic, {}).values())
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as exc:
                log_exception(self.logger, "Subscriber failed", extra={"topic": topic}, exc=exc)
        return delivered

    def _publish_to_patterns(self, event: Event) -> None:
        with self._sub_lock:
            entries = list(self._pattern_subscribers.items())
        for sub_id, (pattern, handler) in entries:
            try:
                if matches_pattern(event, pattern):
                    handler(event)
            except Exception as exc:
                log_exception(self.logger, "Subscriber failed", extra={"subscriber": sub_id, "event_id": event.id}, exc=exc)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, topic: str, handler: Handler) -> Callable[[], bool]:
        """Register ``handler`` on ``topic``; returns an unsubscribe function."""
        if not callable(handler):
            raise TypeError("Event handler must be callable")
        sub_id = next(self._sub_ids)
        with self._sub_lock:
            self._subscribers.setdefault(topic, {})[sub_id] = handler
        self.logger.debug("Subscriber %s registered for %s", sub_id, topic)

        def unsubscribe() -> bool:
            with self._sub_lock:
                handlers = self._subscribers.get(topic)
                if not handlers or sub_id not in handlers:
                    return False
                del handlers[sub_id]
                if not handlers:
                    del self._subscribers[topic]
            self.logger.debug("Subscriber %s removed from %s", sub_id, topic)
            return True

        return unsubscribe

    def subscribe_events(self, pattern: EventPattern, handler: Handler) -> Callable[[], bool]:
        """
        Register ``handler`` for every event selected by ``pattern``.

        A string matches the event type or source exactly, a compiled
        regular expression is searched in either, and a callable is used
        as a predicate on the event. Returns an unsubscribe function.
        """
        if not callable(handler):
            raise TypeError("Event handler must be callable")
        if not isinstance(pattern, (str, re.Pattern)) and not callable(pattern):
            raise TypeError("Event pattern must be a string, a compiled regex or a callable")
        sub_id = next(self._sub_ids)
        with self._sub_lock:
            self._pattern_subscribers[sub_id] = (pattern, handler)
        self.logger.debug("Subscriber %s registered for pattern %r", sub_id, pattern)

        def unsubscribe() -> bool:
            with self._sub_lock:
                if self._pattern_subscribers.pop(sub_id, None) is None:
                    return False
            self.logger.debug("Subscriber %s removed from pattern %r", sub_id, pattern)
            return True

        return unsubscribe

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        """Subscribers of ``topic``, or of every topic and pattern when omitted."""
        with self._sub_lock:
            if topic is not None:
                return len(self._subscribers.get(topic, {}))
            return sum(len(handlers) for handlers in self._subscribers.values()) + len(self._pattern_subscribers)

    # ------------------------------------------------------------------
    # History and stats
    # ------------------------------------------------------------------
    def _record(self, event: Event) -> None:
        with self._stats_lock:
            self._history.append(event)
            self._total_events += 1
            self._last_event_time = event.timestamp
            self._events_by_type[event.type] = self._events_by_type.get(event.type, 0) + 1
            self._events_by_source[event.source] = self._events_by_source.get(event.source, 0) + 1

    def get_events(
        self,
        *,
        type: Optional[str] = None,
        source: Optional[str] = None,
        since: Optional[datetime.datetime] = None,
        until: Optional[datetime.datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        with self._stats_lock:
            events = list(self._history)
        if type:
            events = [e for e in events if e.type == type]
        if source:
            events = [e for e in events if e.source == source]
        if since or until:
            since, until = _as_utc(since), _as_utc(until)
            filtered: List[Event] = []
            for e in events:
                ts = _as_utc(e.parsed_timestamp())
                if ts is None:
                    continue
                if since and ts < since:
                    continue
                if until and ts > until:
                    continue
                filtered.append(e)
            events = filtered
        if limit:
            events = events[-limit:]
        return events

    def clear_old_events(self, max_age_sec: float = 24 * 60 * 60) -> int:
        cutoff = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(seconds=max_age_sec)
        with self._stats_lock:
            kept = deque(maxlen=self._history.maxlen)
            for e in self._history:
                ts = _as_utc(e.parsed_timestamp())
                if ts is None or ts > cutoff:
                    kept.append(e)
            removed = len(self._history) - len(kept)
            self._history = kept
        if removed:
            self.logger.info("Cleared %s old events", removed)
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = {
                "total_events": self._total_events,
                "events_by_type": dict(self._events_by_type),
                "events_by_source": dict(self._events_by_source),
                "last_event_time": self._last_event_time,
            }
        stats["queue_length"] = self._queue.qsize()
        stats["subscriber_count"] = self.subscriber_count()
        return stats


__all__ = ["EventBus", "EventPattern", "Handler", "matches_pattern", "normalize_event", "REQUIRED_FIELDS"]
