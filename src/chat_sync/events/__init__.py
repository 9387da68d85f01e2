"""Domain events published by the synchronization layer."""

from .bus import MUTATION_SETTLED, STREAM_STATUS_CHANGED, Event, EventBus

__all__ = ["Event", "EventBus", "MUTATION_SETTLED", "STREAM_STATUS_CHANGED"]
