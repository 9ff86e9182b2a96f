"""In-process telemetry bus for runtime events (tool runs, delegations, retries)."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Iterable, Mapping

__all__ = [
    "TelemetryEvent",
    "InMemoryEventSink",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
    "clear_event_listeners",
]

LOGGER = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], None]

_EVENT_LISTENERS: dict[str, list[EventCallback]] = {}


@dataclass(slots=True)
class TelemetryEvent:
    """A single captured telemetry event."""

    name: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


class InMemoryEventSink:
    """Ring-buffer sink that subscribes to a set of events for inspection and tests."""

    def __init__(self, event_names: Iterable[str], capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TelemetryEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()
        self._event_names = tuple(event_names)
        self._callbacks: dict[str, EventCallback] = {}
        for name in self._event_names:
            callback = self._make_callback(name)
            self._callbacks[name] = callback
            register_event_listener(name, callback)

    @property
    def capacity(self) -> int:
        return self._capacity

    def _make_callback(self, name: str) -> EventCallback:
        def _record(payload: dict[str, Any]) -> None:
            with self._lock:
                self._buffer.append(TelemetryEvent(name=name, payload=payload))

        return _record

    def tail(self, limit: int | None = None) -> list[TelemetryEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def names(self) -> list[str]:
        return [event.name for event in self.tail()]

    def close(self) -> None:
        for name, callback in self._callbacks.items():
            unregister_event_listener(name, callback)
        self._callbacks.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def register_event_listener(event_name: str, callback: EventCallback) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: EventCallback) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if not listeners:
        return
    try:
        listeners.remove(callback)
    except ValueError:
        return
    if not listeners:
        _EVENT_LISTENERS.pop(event_name, None)


def clear_event_listeners() -> None:
    """Drop every registered listener."""

    _EVENT_LISTENERS.clear()


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)
