"""Tests for the chat-list manager."""

from __future__ import annotations

import unittest

from chat_sync.cache import LocalCache
from chat_sync.exceptions import NetworkFailure
from chat_sync.gateway import InMemoryPersistenceGateway
from chat_sync.managers import ConversationManager
from chat_sync.models import Chat
from chat_sync.mutations import MutationExecutor
from fakes import StepClock


class ConversationManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate list loading, lookups and chat creation."""

    async def asyncSetUp(self) -> None:
        self.clock = StepClock()
        self.cache = LocalCache("alice")
        self.gateway = InMemoryPersistenceGateway("alice", clock=self.clock)
        self.manager = ConversationManager(
            self.cache, self.gateway, MutationExecutor(self.cache), self.clock
        )
        for chat_id in ("c1", "c2", "c3"):
            await self.gateway.create_chat(chat_id, f"chat {chat_id}")
        await self.gateway.pin_chat("c1")
        await self.gateway.archive_chat("c3")

    async def test_load_orders_pinned_first_and_hides_archived(self) -> None:
        chats = await self.manager.load_chats()
        self.assertEqual([chat.id for chat in chats], ["c1", "c2"])
        self.assertEqual([chat.id for chat in self.manager.archived_chats()], ["c3"])
        self.assertEqual(
            [chat.id for chat in self.manager.chats(include_archived=True)],
            ["c1", "c3", "c2"],
        )

    async def test_load_failure_is_logged_and_raised(self) -> None:
        self.gateway.offline = True
        with self.assertLogs("chat_sync.managers.conversation", level="ERROR"):
            with self.assertRaises(NetworkFailure):
                await self.manager.load_chats()
        self.assertIsNone(self.cache.get(self.cache.keys.list()))

    async def test_load_leaves_list_alone_while_a_write_is_in_flight(self) -> None:
        key = self.cache.keys.list()
        local = (Chat(id="local", updated_at=1),)
        self.cache.set(key, local)
        self.cache.begin_write([key])
        await self.manager.load_chats()
        self.assertEqual(self.cache.get(key), local)
        self.cache.end_write([key])

    async def test_create_chat_with_explicit_id(self) -> None:
        await self.manager.load_chats()
        result = await self.manager.create_chat("Plans", chat_id="c9")
        self.assertTrue(result.ok)
        self.assertEqual(self.manager.get("c9").title, "Plans")
        self.assertEqual(self.cache.get(self.cache.keys.messages("c9")), ())
        self.assertIn("c9", [chat.id for chat in self.manager.chats()])

    async def test_get_prefers_list_entry_over_detail(self) -> None:
        await self.manager.load_chats()
        self.cache.set(self.cache.keys.detail("c2"), Chat(id="c2", title="stale"))
        self.assertEqual(self.manager.get("c2").title, "chat c2")
        self.cache.set(self.cache.keys.detail("zz"), Chat(id="zz", title="only detail"))
        self.assertEqual(self.manager.get("zz").title, "only detail")
        self.assertIsNone(self.manager.get("missing"))

    async def test_rename_rejects_blank_title(self) -> None:
        await self.manager.load_chats()
        result = await self.manager.rename("c2", "   ")
        self.assertFalse(result.ok)
        self.assertEqual(self.manager.get("c2").title, "chat c2")


if __name__ == "__main__":
    unittest.main()
