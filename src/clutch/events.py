"""Typed domain events emitted by task, signal and dispatch mutations.

Services never talk to a transport directly. They hand each event to an
injected ``EventSink``; deployments decide where events go (the task_events
table, a Redis Stream, both).
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, Protocol, runtime_checkable

from clutch.errors import ValidationError


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    type: ClassVar[str] = ""

    task_id: str
    project_id: str
    actor: str = "system"

    def payload(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("task_id", "project_id", "actor"):
            data.pop(key)
        return data


@dataclass(frozen=True, kw_only=True)
class TaskCreated(DomainEvent):
    type: ClassVar[str] = "task_created"

    title: str
    status: str
    position: int


@dataclass(frozen=True, kw_only=True)
class TaskMoved(DomainEvent):
    type: ClassVar[str] = "task_moved"

    from_status: str
    to_status: str
    from_position: int
    to_position: int


@dataclass(frozen=True, kw_only=True)
class TaskUpdated(DomainEvent):
    type: ClassVar[str] = "task_updated"

    changed: list[str] = field(default_factory=list)


@dataclass(frozen=True, kw_only=True)
class TaskDeleted(DomainEvent):
    type: ClassVar[str] = "task_deleted"

    title: str
    status: str


@dataclass(frozen=True, kw_only=True)
class TaskCompleted(DomainEvent):
    type: ClassVar[str] = "task_completed"

    status: str
    pr_url: str | None = None


@dataclass(frozen=True, kw_only=True)
class TaskDiscarded(DomainEvent):
    type: ClassVar[str] = "task_discarded"

    session_key: str | None = None
    session_killed: bool = False


@dataclass(frozen=True, kw_only=True)
class TaskAssigned(DomainEvent):
    type: ClassVar[str] = "task_assigned"

    agent_id: str


@dataclass(frozen=True, kw_only=True)
class DispatchStarted(DomainEvent):
    type: ClassVar[str] = "dispatch_started"

    agent_id: str
    session_key: str
    run_id: str


@dataclass(frozen=True, kw_only=True)
class DispatchFailed(DomainEvent):
    type: ClassVar[str] = "dispatch_failed"

    agent_id: str
    error: str


@dataclass(frozen=True, kw_only=True)
class SignalCreated(DomainEvent):
    type: ClassVar[str] = "signal_created"

    signal_id: str
    kind: str
    severity: str
    blocking: bool


@dataclass(frozen=True, kw_only=True)
class SignalResponded(DomainEvent):
    type: ClassVar[str] = "signal_responded"

    signal_id: str
    notification_sent: bool


EVENT_TYPES: dict[str, type[DomainEvent]] = {
    cls.type: cls
    for cls in (
        TaskCreated,
        TaskMoved,
        TaskUpdated,
        TaskDeleted,
        TaskCompleted,
        TaskDiscarded,
        TaskAssigned,
        DispatchStarted,
        DispatchFailed,
        SignalCreated,
        SignalResponded,
    )
}


def decode_event(
    event_type: str, task_id: str, project_id: str, actor: str, data: str | dict
) -> DomainEvent:
    """Rebuild a typed event from its stored form, rejecting unknown shapes."""
    cls = EVENT_TYPES.get(event_type)
    if cls is None:
        raise ValidationError(f"Unknown event type '{event_type}'")
    payload = json.loads(data) if isinstance(data, str) else dict(data)
    if not isinstance(payload, dict):
        raise ValidationError(f"Event payload for '{event_type}' must be an object")
    known = {f.name for f in fields(cls)} - {"task_id", "project_id", "actor"}
    unknown = set(payload) - known
    if unknown:
        raise ValidationError(
            f"Unexpected fields for '{event_type}': {', '.join(sorted(unknown))}"
        )
    try:
        return cls(task_id=task_id, project_id=project_id, actor=actor, **payload)
    except TypeError as exc:
        raise ValidationError(f"Malformed '{event_type}' payload: {exc}") from exc


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: DomainEvent) -> None: ...


class NullSink:
    def emit(self, event: DomainEvent) -> None:
        return None


class FanoutSink:
    """Deliver every event to each wrapped sink in order."""

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: DomainEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)
