"""Structured events for sync cycles, reconciliation and Airtable faults."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Union

from .models import now_ms

logger = logging.getLogger("academy.telemetry")


class SyncEvent(str, Enum):
    SYNC_CYCLE_COMPLETED = "sync_cycle_completed"
    USER_RECONCILED = "user_reconciled"
    AIRTABLE_REQUEST_FAILED = "airtable_request_failed"


# Events that describe something going wrong are logged one level up.
_WARNING_EVENTS = frozenset({SyncEvent.AIRTABLE_REQUEST_FAILED.value})


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]
    emitted_at_ms: int = field(default_factory=now_ms)


Listener = Callable[[TelemetryEvent], None]

_listeners: List[Listener] = []
_lock = RLock()


def register_listener(listener: Listener) -> None:
    with _lock:
        _listeners.append(listener)


def clear_listeners() -> None:
    with _lock:
        _listeners.clear()


def emit_event(name: Union[SyncEvent, str], **fields: Any) -> TelemetryEvent:
    """Fan an event out to listeners and write it as one JSON log line."""
    event_name = name.value if isinstance(name, SyncEvent) else str(name)
    event = TelemetryEvent(name=event_name, payload=_sanitize(fields))

    with _lock:
        listeners = list(_listeners)
    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", event_name)

    level = logging.WARNING if event_name in _WARNING_EVENTS else logging.INFO
    if logger.isEnabledFor(level):
        line = {"event": event_name, "at": event.emitted_at_ms, **event.payload}
        logger.log(level, "TELEMETRY %s", json.dumps(line, default=str, sort_keys=True))
    return event


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _sanitize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_sanitize_value(item) for item in value]
    return value


def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _sanitize_value(value) for key, value in fields.items()}


__all__ = [
    "SyncEvent",
    "TelemetryEvent",
    "clear_listeners",
    "emit_event",
    "register_listener",
]
