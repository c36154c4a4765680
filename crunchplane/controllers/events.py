"""User-visible events attached to reconciled objects.

Consumers match on the event type:

    match event:
        case Event(type=EventType.WARNING, reason=reason):
            alert(reason)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from crunchplane.api.meta import ObjectKey, Resource
from crunchplane.observability.logger import logger

# Reasons
INSTANCE_CREATED = "InstanceCreated"
INSTANCE_DELETED = "InstanceDeleted"
INSTANCE_STARTED = "InstanceStarted"
INSTANCE_TERMINATED = "InstanceTerminated"
RECONCILE_FAILED = "ReconcileFailed"


class EventType(StrEnum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True, slots=True)
class Event:
    kind: str
    key: ObjectKey
    type: EventType
    reason: str
    message: str
    timestamp: datetime


class EventRecorder:
    """Keeps the most recent events in memory and logs each one."""

    def __init__(
        self,
        *,
        capacity: int = 1000,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._events: list[Event] = []
        self._capacity = capacity
        self._clock = clock
        self._log = logger.bind(component="events")

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def for_object(self, obj: Resource) -> list[Event]:
        return [e for e in self._events if e.kind == obj.KIND and e.key == obj.key]

    def record(self, obj: Resource, type: EventType, reason: str, message: str) -> Event:
        event = Event(obj.KIND, obj.key, type, reason, message, self._clock())
        self._events.append(event)
        if len(self._events) > self._capacity:
            del self._events[: len(self._events) - self._capacity]

        log = self._log.bind(namespace=obj.metadata.namespace, name=obj.metadata.name)
        match type:
            case EventType.WARNING:
                log.warning("{kind} {reason}: {message}", kind=obj.KIND, reason=reason, message=message)
            case EventType.NORMAL:
                log.info("{kind} {reason}: {message}", kind=obj.KIND, reason=reason, message=message)
        return event

    def normal(self, obj: Resource, reason: str, message: str) -> Event:
        return self.record(obj, EventType.NORMAL, reason, message)

    def warning(self, obj: Resource, reason: str, message: str) -> Event:
        return self.record(obj, EventType.WARNING, reason, message)


__all__ = [
    "Event",
    "EventRecorder",
    "EventType",
    "INSTANCE_CREATED",
    "INSTANCE_DELETED",
    "INSTANCE_STARTED",
    "INSTANCE_TERMINATED",
    "RECONCILE_FAILED",
]
