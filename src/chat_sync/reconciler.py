"""Merge persisted and streaming messages into one stable, ordered view.

Three sources can describe the same logical message: the optimistic write,
the server echo and the live stream fragment. They may disagree on identity
and on timestamps, so every pass goes through the same three steps:

1. stabilize timestamps (first observation of an identity wins, forever),
2. deduplicate (by identity, then by role + text + time bucket),
3. order by stabilized timestamp, putting a user turn before an assistant
   reply recorded within the similarity window.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
import logging

from .config import SyncSettings
from .models import Message, Role, now_ms

LOGGER = logging.getLogger(__name__)


class TimestampRegistry:
    """Remember the first timestamp assigned to each message identity."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock
        self._stamps: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._stamps)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._stamps

    def get(self, message_id: str) -> int | None:
        return self._stamps.get(message_id)

    def stabilize(self, message: Message) -> int:
        """Return the stable timestamp for ``message``, assigning one if new.

        An explicit ``created_at`` is preferred on first sight; otherwise the
        clock is read. Later observations never change the stored value.
        """
        stamp = self._stamps.get(message.id)
        if stamp is None:
            stamp = message.created_at if message.created_at is not None else self._clock()
            self._stamps[message.id] = stamp
        return stamp

    def forget(self, message_ids: Iterable[str]) -> None:
        for message_id in message_ids:
            self._stamps.pop(message_id, None)


def deduplicate(messages: Sequence[Message], window_ms: int) -> list[Message]:
    """Drop later observations of an already-seen message.

    ``messages`` must carry stabilized timestamps. Two entries with different
    identities collapse only when role, text and time bucket match and at
    least one of them is still unconfirmed; two server-confirmed messages are
    always kept.
    """
    seen_ids: set[str] = set()
    seen_content: dict[tuple[str, str, int], list[Message]] = {}
    kept: list[Message] = []
    for message in messages:
        if message.id in seen_ids:
            continue
        bucket = (message.created_at or 0) // window_ms
        content_key = (message.role.value, message.content, bucket)
        twins = seen_content.get(content_key, [])
        if twins and (message.pending or any(twin.pending for twin in twins)):
            continue
        seen_ids.add(message.id)
        seen_content.setdefault(content_key, []).append(message)
        kept.append(message)
    return kept


def order_messages(messages: Iterable[Message], similarity_ms: int) -> list[Message]:
    """Sort by stabilized timestamp with the user-before-assistant tie-break."""
    ordered = sorted(messages, key=lambda message: message.created_at or 0)
    if similarity_ms <= 0:
        return ordered
    for index in range(1, len(ordered)):
        current = ordered[index]
        if current.role is not Role.USER:
            continue
        target = index
        while target > 0:
            previous = ordered[target - 1]
            if previous.role is not Role.ASSISTANT:
                break
            if (current.created_at or 0) - (previous.created_at or 0) >= similarity_ms:
                break
            target -= 1
        if target != index:
            ordered.insert(target, ordered.pop(index))
    return ordered


class MessageReconciler:
    """Produce the ordered message sequence the UI renders for one session."""

    def __init__(
        self,
        settings: SyncSettings | None = None,
        registry: TimestampRegistry | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.timestamps = registry or TimestampRegistry(clock)

    def stabilize(self, messages: Iterable[Message]) -> list[Message]:
        stabilized: list[Message] = []
        for message in messages:
            stamp = self.timestamps.stabilize(message)
            if message.created_at != stamp:
                message = message.with_changes(created_at=stamp)
            stabilized.append(message)
        return stabilized

    def reconcile(
        self,
        persisted: Iterable[Message],
        streaming: Iterable[Message] = (),
        is_streaming_active: bool = False,
    ) -> list[Message]:
        combined = self.stabilize(persisted)
        if not is_streaming_active:
            return order_messages(combined, self.settings.timestamp_similarity_ms)
        combined.extend(self.stabilize(streaming))
        merged = deduplicate(combined, self.settings.dedup_window_ms)
        if len(merged) != len(combined):
            LOGGER.debug(
                "reconcile.deduplicated",
                extra={
                    "event": "reconcile.deduplicated",
                    "dropped": len(combined) - len(merged),
                },
            )
        return order_messages(merged, self.settings.timestamp_similarity_ms)

    def discard(self, messages: Iterable[Message]) -> None:
        """Forget timestamps of messages that will never be rendered again."""
        self.timestamps.forget(message.id for message in messages)
