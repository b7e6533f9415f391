"""Typed memory domain events and a small emitter for UI observers."""

from __future__ import annotations

import inspect
import time
from typing import Any, Awaitable, Callable, Literal, NotRequired, TypeAlias, TypedDict

from chatmemory.logging import get_logger

logger = get_logger(__name__)

MEMORY_EVENT_CONSOLIDATION_STARTED = "consolidation_started"
MEMORY_EVENT_MEMORY_UPDATED = "memory_updated"
MEMORY_EVENT_CONSOLIDATION_FAILED = "consolidation_failed"
MEMORY_EVENT_MEMORY_WIPED = "memory_wiped"
MEMORY_EVENT_NAMESPACE = "chatmemory.memory"
MEMORY_EVENT_SCHEMA_VERSION = 1

MemoryEventType: TypeAlias = Literal[
    "consolidation_started",
    "memory_updated",
    "consolidation_failed",
    "memory_wiped",
]


class BaseMemoryEvent(TypedDict):
    namespace: str
    version: int
    type: MemoryEventType
    scope_id: str
    sequence: int
    timestamp_ms: int


class ConsolidationStartedEvent(BaseMemoryEvent):
    type: Literal["consolidation_started"]
    pending: int
    snapshot_len: int
    forced: bool


class MemoryUpdatedEvent(BaseMemoryEvent):
    type: Literal["memory_updated"]
    shape: str
    consolidated_cursor: int
    entities_changed: NotRequired[list[str]]
    summary_chars: NotRequired[int]
    no_new_data: NotRequired[bool]


class ConsolidationFailedEvent(BaseMemoryEvent):
    type: Literal["consolidation_failed"]
    error_kind: str
    user_message: str


class MemoryWipedEvent(BaseMemoryEvent):
    type: Literal["memory_wiped"]


MemoryEventPayload: TypeAlias = (
    ConsolidationStartedEvent | MemoryUpdatedEvent | ConsolidationFailedEvent | MemoryWipedEvent
)
MemoryEventListener: TypeAlias = Callable[[MemoryEventPayload], Awaitable[None] | None]


class MemoryEventEmitter:
    """Fan out events to subscribers; listener failures are logged, never raised."""

    def __init__(self) -> None:
        self._listeners: list[MemoryEventListener] = []
        self._sequence = 0

    def subscribe(self, listener: MemoryEventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: MemoryEventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def build(self, event_type: MemoryEventType, scope_id: str, **fields: Any) -> MemoryEventPayload:
        self._sequence += 1
        payload: dict[str, Any] = {
            "namespace": MEMORY_EVENT_NAMESPACE,
            "version": MEMORY_EVENT_SCHEMA_VERSION,
            "type": event_type,
            "scope_id": scope_id,
            "sequence": self._sequence,
            "timestamp_ms": int(time.time() * 1000),
            **fields,
        }
        return payload  # type: ignore[return-value]

    async def emit(self, event_type: MemoryEventType, scope_id: str, **fields: Any) -> MemoryEventPayload:
        event = self.build(event_type, scope_id, **fields)
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Memory event listener failed", event_type=event_type, scope_id=scope_id)
        return event

