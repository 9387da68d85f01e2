"""Observable, identity-scoped key/value cache for chat lists and messages."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

CacheKey = tuple[str, ...]
CacheListener = Callable[[CacheKey, Any], None]

# Marks a key that had no entry when a snapshot was taken.
MISSING: Any = object()


class ChatKeys:
    """Key factory for one authenticated identity.

    Every key embeds the user id, so two identities never address the same
    cache entry.
    """

    NAMESPACE = "chats"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id

    def all(self) -> CacheKey:
        return (self.NAMESPACE, self.user_id)

    def list(self) -> CacheKey:
        return (*self.all(), "list")

    def details(self) -> CacheKey:
        return (*self.all(), "detail")

    def detail(self, chat_id: str) -> CacheKey:
        return (*self.details(), chat_id)

    def messages(self, chat_id: str) -> CacheKey:
        return (*self.detail(chat_id), "messages")


@dataclass(frozen=True)
class CacheSnapshot:
    """Whole-entry copy of a set of keys taken before an optimistic write."""

    entries: Mapping[CacheKey, Any] = field(default_factory=dict)

    @property
    def keys(self) -> tuple[CacheKey, ...]:
        return tuple(self.entries)


class LocalCache:
    """Canonical client-side view of chats and messages for one user.

    Values are treated as immutable (tuples of frozen dataclasses), so a
    snapshot can hold references without copying.
    """

    def __init__(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("LocalCache requires an authenticated user id.")
        self.user_id = user_id
        self.keys = ChatKeys(user_id)
        self._entries: dict[CacheKey, Any] = {}
        self._listeners: list[tuple[CacheKey, CacheListener]] = []
        self._in_flight: dict[CacheKey, int] = {}

    def _check_scope(self, key: CacheKey) -> None:
        if key[:2] != self.keys.all():
            raise KeyError(f"Cache key {key!r} is outside the scope of this user.")

    def get(self, key: CacheKey, default: Any = None) -> Any:
        self._check_scope(key)
        return self._entries.get(key, default)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def set(self, key: CacheKey, value: Any) -> None:
        self._check_scope(key)
        self._entries[key] = value
        self._notify(key, value)

    def update(self, key: CacheKey, updater: Callable[[Any], Any]) -> Any:
        """Write ``updater(current)`` where ``current`` is ``None`` when absent."""
        value = updater(self.get(key))
        self.set(key, value)
        return value

    def remove(self, key: CacheKey) -> None:
        self._check_scope(key)
        if self._entries.pop(key, MISSING) is not MISSING:
            self._notify(key, None)

    def remove_prefix(self, prefix: CacheKey) -> None:
        """Drop every entry whose key starts with ``prefix``."""
        self._check_scope(prefix)
        doomed = [key for key in self._entries if key[: len(prefix)] == prefix]
        for key in doomed:
            del self._entries[key]
        for key in doomed:
            self._notify(key, None)

    def snapshot(self, keys: Iterable[CacheKey]) -> CacheSnapshot:
        entries: dict[CacheKey, Any] = {}
        for key in keys:
            self._check_scope(key)
            entries[key] = self._entries.get(key, MISSING)
        return CacheSnapshot(entries)

    def restore(self, snapshot: CacheSnapshot) -> None:
        """Put every snapshotted entry back before notifying anyone."""
        for key, value in snapshot.entries.items():
            if value is MISSING:
                self._entries.pop(key, None)
            else:
                self._entries[key] = value
        for key, value in snapshot.entries.items():
            self._notify(key, None if value is MISSING else value)

    def clear(self) -> None:
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(key, None)

    # In-flight bookkeeping lets background refreshes skip keys that an
    # unsettled mutation still owns.

    def begin_write(self, keys: Iterable[CacheKey]) -> None:
        for key in keys:
            self._in_flight[key] = self._in_flight.get(key, 0) + 1

    def end_write(self, keys: Iterable[CacheKey]) -> None:
        for key in keys:
            remaining = self._in_flight.get(key, 0) - 1
            if remaining > 0:
                self._in_flight[key] = remaining
            else:
                self._in_flight.pop(key, None)

    def has_write_in_flight(self, key: CacheKey) -> bool:
        return self._in_flight.get(key, 0) > 0

    def subscribe(
        self, listener: CacheListener, prefix: CacheKey | None = None
    ) -> Callable[[], None]:
        """Call ``listener(key, value)`` on writes under ``prefix``.

        Returns a function that removes the subscription.
        """
        scope = prefix or self.keys.all()
        self._check_scope(scope)
        entry = (scope, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def _notify(self, key: CacheKey, value: Any) -> None:
        for prefix, listener in list(self._listeners):
            if key[: len(prefix)] != prefix:
                continue
            try:
                listener(key, value)
            except Exception as exc:  # noqa: BLE001 - a broken view must not corrupt writes.
                LOGGER.error(
                    "cache.listener_failed",
                    extra={
                        "event": "cache.listener_failed",
                        "key": "/".join(key),
                        "error_type": exc.__class__.__name__,
                    },
                )
