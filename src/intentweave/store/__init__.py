"""Page/intent store, lifecycle and event channel."""

from intentweave.store.events import EventBus, EventType, StoreEvent
from intentweave.store.store import IntentStore

__all__ = ["EventBus", "EventType", "IntentStore", "StoreEvent"]
