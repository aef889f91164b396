"""
World Events - Mutation notifications published by the host.

The host publishes one WorldEvent per change; the change detector is the
main subscriber. Payloads carry the changed entity's data plus a diff of
changed fields (and their previous values where the host knows them).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable
import time

import structlog


log = structlog.get_logger(__name__)


class EventName(Enum):
    """Named mutation events."""
    TOKEN_MOVED = "tokenMoved"
    TOKEN_CREATED = "tokenCreated"
    TOKEN_UPDATED = "tokenUpdated"
    TOKEN_DELETED = "tokenDeleted"
    LIGHT_CHANGED = "lightChanged"
    WALL_CHANGED = "wallChanged"
    CONDITION_CHANGED = "conditionChanged"
    ITEM_CHANGED = "itemChanged"
    DARKNESS_CHANGED = "darknessChanged"
    TEMPLATE_CHANGED = "templateChanged"


class ChangeAction(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class WorldEvent:
    """
    A single world mutation.

    entity_id: id of the changed document (token, light, wall, item...)
    data: current data of the entity
    changes: only the fields that changed, with their new values
    previous: old values of the changed fields, when known
    """
    name: EventName
    entity_id: str | None = None
    action: ChangeAction = ChangeAction.UPDATE
    data: dict[str, Any] = field(default_factory=dict)
    changes: dict[str, Any] = field(default_factory=dict)
    previous: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[WorldEvent], None]


class EventBus:
    """
    Synchronous publish/subscribe for world events.

    Subscribers register per event name (or for all events with None).
    A failing subscriber is logged and skipped; the others still run.
    """

    def __init__(self):
        self._handlers: dict[EventName | None, list[EventHandler]] = {}

    def subscribe(
        self,
        name: EventName | None,
        handler: EventHandler,
    ) -> Callable[[], None]:
        """Register a handler. Returns a function that unsubscribes it."""
        self._handlers.setdefault(name, []).append(handler)

        def _unsubscribe():
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: WorldEvent) -> None:
        handlers = list(self._handlers.get(event.name, [])) + list(self._handlers.get(None, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                log.warning(
                    "event_handler_failed",
                    event_name=event.name.value,
                    entity_id=event.entity_id,
                    error=str(e),
                    exc_info=True,
                )

    def handler_count(self, name: EventName | None = None) -> int:
        return len(self._handlers.get(name, []))
