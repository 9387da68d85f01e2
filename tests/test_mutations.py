"""Tests for the optimistic mutation protocol."""

from __future__ import annotations

import unittest

from chat_sync import mutations
from chat_sync.cache import LocalCache
from chat_sync.events import MUTATION_SETTLED, EventBus
from chat_sync.exceptions import ConflictFailure, NetworkFailure, ValidationFailure
from chat_sync.gateway import InMemoryPersistenceGateway
from chat_sync.models import Message, MessageDraft, Role
from chat_sync.mutations import MutationExecutor, MutationKind
from chat_sync.refresh import CacheRefresher
from chat_sync.task_manager import TaskManager
from chat_sync.views import find_chat, order_chats
from fakes import StepClock


class ObservingGateway(InMemoryPersistenceGateway):
    """Records what the cache showed at the moment ``pin_chat`` was called."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.cache: LocalCache | None = None
        self.seen_pinned_at: list[int | None] = []

    async def pin_chat(self, chat_id: str) -> None:
        chat = find_chat(self.cache.get(self.cache.keys.list()), chat_id)
        self.seen_pinned_at.append(chat.pinned_at)
        await super().pin_chat(chat_id)


class BrokenGateway(InMemoryPersistenceGateway):
    async def archive_chat(self, chat_id: str) -> None:
        raise RuntimeError("bug in gateway")


class MutationTestCase(unittest.IsolatedAsyncioTestCase):
    gateway_class = InMemoryPersistenceGateway

    async def asyncSetUp(self) -> None:
        self.clock = StepClock()
        self.gateway = self.gateway_class("alice", clock=self.clock)
        self.cache = LocalCache("alice")
        self.keys = self.cache.keys
        self.executor = MutationExecutor(self.cache)

        await self.gateway.create_chat("c1")
        await self.gateway.create_message(
            "c1", MessageDraft(Role.USER, "hello there", id="m1")
        )
        await self.gateway.create_chat("c2")
        chats = await self.gateway.list_chats("alice")
        self.cache.set(self.keys.list(), order_chats(chats))
        self.cache.set(self.keys.detail("c1"), await self.gateway.get_chat("c1"))
        self.cache.set(
            self.keys.messages("c1"), tuple(await self.gateway.list_messages("c1"))
        )
        self.gateway.calls.clear()

    def chat(self, chat_id: str):
        return find_chat(self.cache.get(self.keys.list()), chat_id)


class CreateMessageTests(MutationTestCase):
    async def test_settle_swaps_optimistic_entry_for_confirmed(self) -> None:
        message = Message(id="m2", chat_id="c1", role=Role.USER, content="again")
        result = await self.executor.run(
            mutations.create_message(self.cache, self.gateway, message, clock=self.clock)
        )

        self.assertTrue(result.ok)
        self.assertEqual(result.kind, MutationKind.CREATE_MESSAGE)
        stored = self.cache.get(self.keys.messages("c1"))
        self.assertEqual([m.id for m in stored], ["m1", "m2"])
        self.assertFalse(stored[-1].pending)

    async def test_optimistic_apply_bumps_chat_to_front(self) -> None:
        self.assertEqual(self.cache.get(self.keys.list())[0].id, "c2")
        message = Message(id="m2", chat_id="c1", role=Role.USER, content="bump")
        mutation = mutations.create_message(
            self.cache, self.gateway, message, clock=self.clock
        )
        mutation.apply(self.cache)

        self.assertEqual(self.cache.get(self.keys.list())[0].id, "c1")
        self.assertTrue(self.cache.get(self.keys.messages("c1"))[-1].pending)

    async def test_failure_leaves_no_orphan(self) -> None:
        before = self.cache.get(self.keys.messages("c1"))
        self.gateway.offline = True
        message = Message(id="m2", chat_id="c1", role=Role.USER, content="lost")
        result = await self.executor.run(
            mutations.create_message(self.cache, self.gateway, message, clock=self.clock)
        )

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, NetworkFailure)
        self.assertEqual(self.cache.get(self.keys.messages("c1")), before)

    async def test_new_chat_placeholder_removed_on_failure(self) -> None:
        self.gateway.offline = True
        message = Message(id="m9", chat_id="c-new", role=Role.USER, content="hi")
        await self.executor.run(
            mutations.create_message(
                self.cache, self.gateway, message, new_chat=True, clock=self.clock
            )
        )
        self.assertIsNone(self.chat("c-new"))
        self.assertNotIn(self.keys.messages("c-new"), self.cache)

    async def test_empty_content_rejected_before_any_change(self) -> None:
        before = self.cache.get(self.keys.messages("c1"))
        message = Message(id="m2", chat_id="c1", role=Role.USER, content="   ")
        result = await self.executor.run(
            mutations.create_message(self.cache, self.gateway, message)
        )

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, ValidationFailure)
        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(self.cache.get(self.keys.messages("c1")), before)


class ChatMetadataTests(MutationTestCase):
    gateway_class = ObservingGateway

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.gateway.cache = self.cache

    async def test_pin_while_offline_reverts(self) -> None:
        self.gateway.offline = True
        with self.assertLogs("chat_sync.mutations", level="WARNING") as logs:
            result = await self.executor.run(
                mutations.pin_chat(self.cache, self.gateway, "c1", clock=self.clock)
            )

        self.assertFalse(result.ok)
        self.assertIsNone(self.chat("c1").pinned_at)
        self.assertIsNone(self.cache.get(self.keys.detail("c1")).pinned_at)
        self.assertTrue(any("mutation.rolled_back" in line for line in logs.output))

    async def test_pin_is_visible_before_the_server_answers(self) -> None:
        result = await self.executor.run(
            mutations.pin_chat(self.cache, self.gateway, "c2", clock=self.clock)
        )
        self.assertTrue(result.ok)
        self.assertIsNotNone(self.gateway.seen_pinned_at[0])
        self.assertEqual(self.cache.get(self.keys.list())[0].id, "c2")

    async def test_archive_and_unarchive(self) -> None:
        await self.executor.run(
            mutations.archive_chat(self.cache, self.gateway, "c1", clock=self.clock)
        )
        self.assertTrue(self.chat("c1").is_archived)
        await self.executor.run(mutations.unarchive_chat(self.cache, self.gateway, "c1"))
        self.assertFalse(self.chat("c1").is_archived)

    async def test_rename_settles_server_chat(self) -> None:
        result = await self.executor.run(
            mutations.rename_chat(self.cache, self.gateway, "c1", "  Renamed  ")
        )
        self.assertTrue(result.ok)
        self.assertEqual(self.chat("c1").title, "Renamed")
        self.assertEqual(self.cache.get(self.keys.detail("c1")).title, "Renamed")

    async def test_rename_to_blank_is_rejected(self) -> None:
        result = await self.executor.run(
            mutations.rename_chat(self.cache, self.gateway, "c1", "   ")
        )
        self.assertIsInstance(result.error, ValidationFailure)
        self.assertEqual(self.chat("c1").title, "hello there")

    async def test_missing_chat_is_a_conflict(self) -> None:
        self.cache.update(
            self.keys.list(), lambda chats: chats + (self.chat("c1").with_changes(id="gone"),)
        )
        result = await self.executor.run(
            mutations.unpin_chat(self.cache, self.gateway, "gone")
        )
        self.assertIsInstance(result.error, ConflictFailure)
        self.assertEqual(result.error_type, "ConflictFailure")

    async def test_delete_drops_chat_from_every_view(self) -> None:
        result = await self.executor.run(
            mutations.delete_chat(self.cache, self.gateway, "c1")
        )
        self.assertTrue(result.ok)
        self.assertIsNone(self.chat("c1"))
        self.assertNotIn(self.keys.detail("c1"), self.cache)
        self.assertNotIn(self.keys.messages("c1"), self.cache)


class RollbackTests(MutationTestCase):
    """Every mutation kind restores the exact pre-mutation state on failure."""

    def builders(self):
        new_message = Message(id="m2", chat_id="c1", role=Role.USER, content="x")
        first_message = Message(id="m3", chat_id="c-new", role=Role.USER, content="y")
        return {
            "create_message": lambda: mutations.create_message(
                self.cache, self.gateway, new_message, clock=self.clock
            ),
            "create_message_new_chat": lambda: mutations.create_message(
                self.cache, self.gateway, first_message, new_chat=True, clock=self.clock
            ),
            "create_chat": lambda: mutations.create_chat(
                self.cache, self.gateway, "c-new", "Title", clock=self.clock
            ),
            "pin": lambda: mutations.pin_chat(self.cache, self.gateway, "c1", self.clock),
            "unpin": lambda: mutations.unpin_chat(self.cache, self.gateway, "c1"),
            "archive": lambda: mutations.archive_chat(
                self.cache, self.gateway, "c1", self.clock
            ),
            "unarchive": lambda: mutations.unarchive_chat(self.cache, self.gateway, "c1"),
            "rename": lambda: mutations.rename_chat(
                self.cache, self.gateway, "c1", "Renamed", self.clock
            ),
            "delete": lambda: mutations.delete_chat(self.cache, self.gateway, "c1"),
            "delete_message": lambda: mutations.delete_message(
                self.cache, self.gateway, "c1", "m1"
            ),
        }

    def state(self) -> dict:
        watched = [
            self.keys.list(),
            self.keys.detail("c1"),
            self.keys.messages("c1"),
            self.keys.detail("c-new"),
            self.keys.messages("c-new"),
        ]
        return {key: (key in self.cache, self.cache.get(key)) for key in watched}

    async def test_every_kind_rolls_back_atomically(self) -> None:
        self.gateway.offline = True
        for name, build in self.builders().items():
            with self.subTest(kind=name):
                before = self.state()
                result = await self.executor.run(build())
                self.assertFalse(result.ok)
                self.assertIsInstance(result.error, NetworkFailure)
                self.assertEqual(self.state(), before)
                self.assertFalse(self.cache.has_write_in_flight(self.keys.list()))


class ProgrammerErrorTests(MutationTestCase):
    gateway_class = BrokenGateway

    async def test_non_domain_error_propagates_after_rollback(self) -> None:
        with self.assertRaises(RuntimeError):
            await self.executor.run(
                mutations.archive_chat(self.cache, self.gateway, "c1", clock=self.clock)
            )
        self.assertFalse(self.chat("c1").is_archived)


class SettleSideEffectsTests(MutationTestCase):
    async def test_settled_event_published(self) -> None:
        bus = EventBus()
        received: list[dict] = []
        bus.subscribe(MUTATION_SETTLED, lambda event: received.append(event.data))
        executor = MutationExecutor(self.cache, events=bus)

        await executor.run(mutations.pin_chat(self.cache, self.gateway, "c1"))

        self.assertEqual(
            received,
            [{"kind": "pin", "chat_id": "c1", "ok": True, "error_type": None}],
        )

    async def test_refresh_scheduled_after_settle(self) -> None:
        tasks = TaskManager()
        executor = MutationExecutor(
            self.cache, tasks=tasks, refresher=CacheRefresher(self.cache, self.gateway)
        )
        self.gateway.offline = True
        await executor.run(mutations.pin_chat(self.cache, self.gateway, "c1"))
        self.gateway.offline = False
        await tasks.await_all()
        self.assertIn("list_chats", self.gateway.calls)

    async def test_refresh_disabled_by_setting(self) -> None:
        tasks = TaskManager()
        executor = MutationExecutor(
            self.cache,
            tasks=tasks,
            refresher=CacheRefresher(self.cache, self.gateway),
            refresh_after_settle=False,
        )
        await executor.run(mutations.pin_chat(self.cache, self.gateway, "c1"))
        await tasks.await_all()
        self.assertNotIn("list_chats", self.gateway.calls)


class CacheRefresherTests(MutationTestCase):
    async def test_skips_key_with_write_in_flight(self) -> None:
        refresher = CacheRefresher(self.cache, self.gateway)
        self.cache.begin_write([self.keys.list()])
        written = await refresher.refresh_key(self.keys.list())
        self.assertFalse(written)
        self.assertEqual(self.gateway.calls, [])

    async def test_refresh_failure_is_logged_not_raised(self) -> None:
        refresher = CacheRefresher(self.cache, self.gateway)
        self.gateway.offline = True
        with self.assertLogs("chat_sync.refresh", level="WARNING"):
            await refresher([self.keys.list()])

    async def test_refreshes_messages_and_detail(self) -> None:
        refresher = CacheRefresher(self.cache, self.gateway)
        self.cache.set(self.keys.messages("c1"), ())
        self.cache.remove(self.keys.detail("c1"))
        await refresher([self.keys.messages("c1"), self.keys.detail("c1")])
        self.assertEqual([m.id for m in self.cache.get(self.keys.messages("c1"))], ["m1"])
        self.assertEqual(self.cache.get(self.keys.detail("c1")).id, "c1")


if __name__ == "__main__":
    unittest.main()
