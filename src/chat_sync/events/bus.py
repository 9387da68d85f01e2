"""Event bus for decoupled component communication.

Usage:
    bus = EventBus()

    async def on_settled(event):
        print(event.data["kind"], event.data["ok"])

    bus.subscribe(MUTATION_SETTLED, on_settled)
    await bus.publish(MUTATION_SETTLED, {"kind": "pin", "ok": True})
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import inspect
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

MUTATION_SETTLED = "mutation.settled"
STREAM_STATUS_CHANGED = "stream.status_changed"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Publish/subscribe hub shared by the executor and stream managers.

    One bus is created per controller so tests get isolated instances.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """Subscribe a sync or async handler to an event name."""
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug(f"Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        if event_name in self._subscribers:
            try:
                self._subscribers[event_name].remove(handler)
            except ValueError:
                pass

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish an event to all subscribers.

        Handler failures are logged and never reach the publisher.
        """
        event = Event(name=event_name, data=data, source=source)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:  # noqa: BLE001 - subscriber bugs stay local.
                LOGGER.error(f"Event handler failed for {event_name}: {e}")

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
