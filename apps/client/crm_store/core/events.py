from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


CACHE_CHANGED = "crm.cache.changed"
SELECTION_CHANGED = "crm.selection.changed"


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        self._subscribers[event_name].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)
