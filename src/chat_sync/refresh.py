"""Background re-fetch of cached views from the persistence gateway."""

from __future__ import annotations

from collections.abc import Iterable
import logging
from typing import Any

from .cache import CacheKey, LocalCache
from .exceptions import ChatSyncError
from .gateway import PersistenceGateway
from .views import merge_refreshed_messages, order_chats

LOGGER = logging.getLogger(__name__)


class CacheRefresher:
    """Re-read chat lists, chat details and message lists into the cache.

    A key that has a mutation in flight is left alone, both before the fetch
    and when the answer arrives; the mutation's own post-settle refresh
    covers it later. Failures are logged and never raised, since a refresh
    always runs in the background.
    """

    def __init__(self, cache: LocalCache, gateway: PersistenceGateway) -> None:
        self.cache = cache
        self.gateway = gateway

    async def __call__(self, keys: Iterable[CacheKey]) -> None:
        await self.refresh(keys)

    async def refresh(self, keys: Iterable[CacheKey]) -> None:
        for key in dict.fromkeys(keys):
            await self.refresh_key(key)

    async def refresh_key(self, key: CacheKey) -> bool:
        """Refresh one key; return ``True`` when the cache was written."""
        if self.cache.has_write_in_flight(key):
            LOGGER.debug(
                "refresh.skipped",
                extra={"event": "refresh.skipped", "key": "/".join(key)},
            )
            return False
        try:
            value = await self._fetch(key)
        except ChatSyncError as exc:
            LOGGER.warning(
                "refresh.failed",
                extra={
                    "event": "refresh.failed",
                    "key": "/".join(key),
                    "error_type": exc.__class__.__name__,
                },
            )
            return False
        if self.cache.has_write_in_flight(key):
            return False
        self.cache.set(key, value)
        return True

    async def _fetch(self, key: CacheKey) -> Any:
        keys = self.cache.keys
        if key == keys.list():
            chats = await self.gateway.list_chats(self.cache.user_id)
            return order_chats(chats)
        if key[: len(keys.details())] != keys.details() or len(key) < 4:
            raise KeyError(f"No refresh source for cache key {key!r}.")
        chat_id = key[3]
        if key == keys.messages(chat_id):
            messages = await self.gateway.list_messages(chat_id)
            # Re-read the local value after the await: it may have moved on.
            return merge_refreshed_messages(self.cache.get(key), messages)
        if key == keys.detail(chat_id):
            return await self.gateway.get_chat(chat_id)
        raise KeyError(f"No refresh source for cache key {key!r}.")
