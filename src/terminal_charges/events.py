"""Charge domain events and the in-process event bus."""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List

from .status import ChargeStatus

logger = logging.getLogger(__name__)

CHARGE_INITIATED = "charge.initiated"

EventHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


def charge_event_name(status: ChargeStatus) -> str:
    """Event name emitted when a charge reaches ``status``, e.g. ``charge.approved``."""
    return f"charge.{status.value}"


CHARGE_OUTCOME_EVENTS = tuple(charge_event_name(s) for s in ChargeStatus if s.is_terminal)


class EventPublisher(ABC):
    """Fire-and-forget fan-out of charge events to downstream consumers."""

    @abstractmethod
    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryEventBus(EventPublisher):
    """Dispatches events to in-process subscribers.

    A failing handler is logged and does not stop delivery to the others;
    publishers never see subscriber errors.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._subscribers.pop(event_name, None)

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Publishing {event_name} for charge {payload.get('charge_id')}")
        # Iterate over a copy in case handlers mutate subscriptions.
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                await handler(event_name, payload)
            except Exception:
                logger.exception(f"Event handler {getattr(handler, '__qualname__', handler)} failed for {event_name}")
