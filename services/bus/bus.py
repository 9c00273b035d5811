"""
In-process typed event bus.

- `event(type, model)` declares a named event whose payload is a pydantic model
- `EventBus.publish` validates the payload and calls every handler
  registered for that type plus every wildcard ("*") handler
- handlers run synchronously in registration order; a failing handler is
  logged and never breaks the publisher

Nothing is persisted and there is no replay: only handlers registered at
publish time see the event.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Union

from pydantic import BaseModel


logger = logging.getLogger(__name__)

WILDCARD = "*"


@dataclass(frozen=True)
class EventDefinition:
    type: str
    model: type[BaseModel]


@dataclass(frozen=True)
class Event:
    type: str
    properties: BaseModel


Handler = Callable[[Event], Any]
Unsubscribe = Callable[[], None]

_registry: Dict[str, EventDefinition] = {}


def event(type: str, model: type[BaseModel]) -> EventDefinition:
    definition = EventDefinition(type=type, model=model)
    _registry[type] = definition
    return definition


def payloads() -> List[EventDefinition]:
    """All event definitions declared so far."""
    return list(_registry.values())


class EventBus:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    # -----------------------------
    # Publishing
    # -----------------------------
    def publish(
        self,
        definition: EventDefinition,
        properties: Union[BaseModel, Mapping[str, Any]],
    ) -> Event:
        if isinstance(properties, definition.model):
            payload = properties
        else:
            payload = definition.model.model_validate(properties)

        evt = Event(type=definition.type, properties=payload)

        with self._lock:
            handlers = list(self._subscribers.get(definition.type, ()))
            handlers += list(self._subscribers.get(WILDCARD, ()))

        for handler in handlers:
            try:
                handler(evt)
            except Exception:
                logger.exception("Event handler failed", extra={"event_type": definition.type})

        return evt

    # -----------------------------
    # Subscribing
    # -----------------------------
    def subscribe(self, definition: EventDefinition, handler: Handler) -> Unsubscribe:
        return self._add(definition.type, handler)

    def subscribe_all(self, handler: Handler) -> Unsubscribe:
        return self._add(WILDCARD, handler)

    def once(self, definition: EventDefinition, handler: Callable[[Event], Any]) -> Unsubscribe:
        """
        Keeps calling `handler` until it returns a truthy value, then unsubscribes it.
        """

        def wrapper(evt: Event) -> None:
            if handler(evt):
                unsubscribe()

        unsubscribe = self._add(definition.type, wrapper)
        return unsubscribe

    def subscriber_count(self, type: str) -> int:
        with self._lock:
            return len(self._subscribers.get(type, ()))

    def _add(self, type: str, handler: Handler) -> Unsubscribe:
        with self._lock:
            self._subscribers[type].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._subscribers.get(type)
                if handlers and handler in handlers:
                    handlers.remove(handler)

        return unsubscribe
