"""Chat-list level operations for one identity.

Loads the chat list into the cache, derives the visible list view and routes
pin, archive, rename, delete and create through the mutation executor.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .. import mutations
from ..exceptions import ChatSyncError
from ..models import Chat, new_id, now_ms
from ..views import find_chat, order_chats, visible_chats

if TYPE_CHECKING:
    from ..cache import LocalCache
    from ..gateway import PersistenceGateway
    from ..mutations import Clock, MutationExecutor, MutationResult

LOGGER = logging.getLogger(__name__)


class ConversationManager:
    """Manages the chat list of one user.

    Responsibilities:
    - Load and refresh the chat list
    - Derive the ordered, filtered list view
    - Run chat metadata mutations
    """

    def __init__(
        self,
        cache: LocalCache,
        gateway: PersistenceGateway,
        executor: MutationExecutor,
        clock: Clock = now_ms,
    ) -> None:
        self.cache = cache
        self.gateway = gateway
        self.executor = executor
        self.clock = clock

    async def load_chats(self) -> tuple[Chat, ...]:
        """Fetch the chat list into the cache and return the default view.

        Raises:
            NetworkFailure: If the list could not be fetched
        """
        key = self.cache.keys.list()
        try:
            chats = await self.gateway.list_chats(self.cache.user_id)
        except ChatSyncError as exc:
            LOGGER.error(
                "chats.load_failed",
                extra={"event": "chats.load_failed", "error_type": exc.__class__.__name__},
            )
            raise
        # An unsettled mutation owns the list until its own refresh runs.
        if not self.cache.has_write_in_flight(key):
            self.cache.set(key, order_chats(chats))
        LOGGER.info(
            "chats.loaded",
            extra={"event": "chats.loaded", "count": len(self.cache.get(key) or ())},
        )
        return self.chats()

    def chats(self, include_archived: bool = False) -> tuple[Chat, ...]:
        """Pinned first, then most recently updated; archived only on request."""
        return visible_chats(
            self.cache.get(self.cache.keys.list()), include_archived=include_archived
        )

    def archived_chats(self) -> tuple[Chat, ...]:
        return tuple(chat for chat in self.chats(include_archived=True) if chat.is_archived)

    def get(self, chat_id: str) -> Chat | None:
        """The list entry is refreshed after every write, so it wins over the detail."""
        listed = find_chat(self.cache.get(self.cache.keys.list()), chat_id)
        if listed is not None:
            return listed
        return self.cache.get(self.cache.keys.detail(chat_id))

    async def create_chat(
        self, title: str | None = None, chat_id: str | None = None
    ) -> MutationResult:
        mutation = mutations.create_chat(
            self.cache, self.gateway, chat_id or new_id(), title, clock=self.clock
        )
        return await self.executor.run(mutation)

    async def pin(self, chat_id: str) -> MutationResult:
        return await self.executor.run(
            mutations.pin_chat(self.cache, self.gateway, chat_id, clock=self.clock)
        )

    async def unpin(self, chat_id: str) -> MutationResult:
        return await self.executor.run(
            mutations.unpin_chat(self.cache, self.gateway, chat_id)
        )

    async def archive(self, chat_id: str) -> MutationResult:
        return await self.executor.run(
            mutations.archive_chat(self.cache, self.gateway, chat_id, clock=self.clock)
        )

    async def unarchive(self, chat_id: str) -> MutationResult:
        return await self.executor.run(
            mutations.unarchive_chat(self.cache, self.gateway, chat_id)
        )

    async def rename(self, chat_id: str, title: str) -> MutationResult:
        return await self.executor.run(
            mutations.rename_chat(self.cache, self.gateway, chat_id, title, clock=self.clock)
        )

    async def delete(self, chat_id: str) -> MutationResult:
        return await self.executor.run(
            mutations.delete_chat(self.cache, self.gateway, chat_id)
        )
