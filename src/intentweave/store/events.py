"""Event channel the store publishes to.

Subscribers (the engine's merge coordinator, the CLI, tests) register a
callback, optionally filtered by event type.  Delivery is synchronous and
in publish order.  A failing subscriber is logged and does not stop
delivery to the others or fail the store write that published it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    PAGE_ADDED = "page_added"
    PAGE_UPDATED = "page_updated"
    PAGE_DELETED = "page_deleted"
    INTENT_CREATED = "intent_created"
    INTENT_UPDATED = "intent_updated"
    INTENT_STATUS_CHANGED = "intent_status_changed"
    INTENT_MERGED = "intent_merged"
    INTENT_DELETED = "intent_deleted"
    NUDGE_SAVED = "nudge_saved"
    NUDGE_DELETED = "nudge_deleted"


@dataclass(frozen=True)
class StoreEvent:
    type: EventType
    entity_id: str
    detail: dict[str, object] = field(default_factory=dict)


Subscriber = Callable[[StoreEvent], None]


class EventBus:
    """Synchronous publish/subscribe channel."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []

    def subscribe(
        self,
        callback: Subscriber,
        types: Iterable[EventType] | None = None,
    ) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        entry = (callback, frozenset(types) if types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: StoreEvent) -> None:
        for callback, types in list(self._subscribers):
            if types is not None and event.type not in types:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber failed on %s for %s", event.type, event.entity_id)
