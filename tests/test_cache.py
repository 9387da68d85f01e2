"""Tests for the identity-scoped local cache."""

from __future__ import annotations

import unittest

from chat_sync.cache import MISSING, ChatKeys, LocalCache
from chat_sync.models import Chat


class ChatKeysTests(unittest.TestCase):
    def test_keys_embed_user_id(self) -> None:
        keys = ChatKeys("alice")
        self.assertEqual(keys.list(), ("chats", "alice", "list"))
        self.assertEqual(keys.detail("c1"), ("chats", "alice", "detail", "c1"))
        self.assertEqual(
            keys.messages("c1"), ("chats", "alice", "detail", "c1", "messages")
        )

    def test_two_identities_never_share_keys(self) -> None:
        self.assertNotEqual(ChatKeys("alice").list(), ChatKeys("bob").list())


class LocalCacheTests(unittest.TestCase):
    """Validate reads, writes, snapshots and notifications."""

    def setUp(self) -> None:
        self.cache = LocalCache("alice")
        self.keys = self.cache.keys

    def test_requires_user_id(self) -> None:
        with self.assertRaises(ValueError):
            LocalCache("")

    def test_rejects_keys_of_another_identity(self) -> None:
        with self.assertRaises(KeyError):
            self.cache.set(ChatKeys("bob").list(), ())
        with self.assertRaises(KeyError):
            self.cache.get(ChatKeys("bob").list())

    def test_update_receives_none_when_absent(self) -> None:
        seen: list[object] = []

        def updater(current: object) -> tuple:
            seen.append(current)
            return ("x",)

        self.cache.update(self.keys.list(), updater)
        self.assertEqual(seen, [None])
        self.assertEqual(self.cache.get(self.keys.list()), ("x",))

    def test_snapshot_records_absent_keys(self) -> None:
        snapshot = self.cache.snapshot([self.keys.detail("c1")])
        self.assertIs(snapshot.entries[self.keys.detail("c1")], MISSING)

    def test_restore_puts_back_values_and_removes_new_keys(self) -> None:
        chat = Chat(id="c1", title="one")
        self.cache.set(self.keys.list(), (chat,))
        snapshot = self.cache.snapshot([self.keys.list(), self.keys.detail("c1")])

        self.cache.set(self.keys.list(), ())
        self.cache.set(self.keys.detail("c1"), chat)
        self.cache.restore(snapshot)

        self.assertEqual(self.cache.get(self.keys.list()), (chat,))
        self.assertNotIn(self.keys.detail("c1"), self.cache)

    def test_restore_notifies_after_every_key_is_back(self) -> None:
        self.cache.set(self.keys.list(), ("a",))
        self.cache.set(self.keys.detail("c1"), "detail")
        snapshot = self.cache.snapshot([self.keys.list(), self.keys.detail("c1")])
        self.cache.set(self.keys.list(), ("b",))
        self.cache.remove(self.keys.detail("c1"))

        observed: list[tuple] = []
        self.cache.subscribe(
            lambda _key, _value: observed.append(
                (self.cache.get(self.keys.list()), self.cache.get(self.keys.detail("c1")))
            )
        )
        self.cache.restore(snapshot)

        self.assertEqual(len(observed), 2)
        for state in observed:
            self.assertEqual(state, (("a",), "detail"))

    def test_subscribe_filters_by_prefix_and_unsubscribes(self) -> None:
        received: list[tuple] = []
        unsubscribe = self.cache.subscribe(
            lambda key, value: received.append((key, value)), prefix=self.keys.detail("c1")
        )
        self.cache.set(self.keys.list(), ())
        self.cache.set(self.keys.messages("c1"), ())
        unsubscribe()
        self.cache.set(self.keys.messages("c1"), ("later",))

        self.assertEqual(received, [(self.keys.messages("c1"), ())])

    def test_failing_listener_does_not_block_writes(self) -> None:
        def broken(_key: object, _value: object) -> None:
            raise RuntimeError("view crashed")

        self.cache.subscribe(broken)
        with self.assertLogs("chat_sync.cache", level="ERROR") as logs:
            self.cache.set(self.keys.list(), ("kept",))
        self.assertEqual(self.cache.get(self.keys.list()), ("kept",))
        self.assertTrue(any("cache.listener_failed" in line for line in logs.output))

    def test_remove_prefix_drops_nested_entries(self) -> None:
        self.cache.set(self.keys.detail("c1"), "d")
        self.cache.set(self.keys.messages("c1"), ())
        self.cache.set(self.keys.list(), ())
        self.cache.remove_prefix(self.keys.detail("c1"))
        self.assertNotIn(self.keys.detail("c1"), self.cache)
        self.assertNotIn(self.keys.messages("c1"), self.cache)
        self.assertIn(self.keys.list(), self.cache)

    def test_write_in_flight_is_counted(self) -> None:
        key = self.keys.list()
        self.cache.begin_write([key])
        self.cache.begin_write([key])
        self.cache.end_write([key])
        self.assertTrue(self.cache.has_write_in_flight(key))
        self.cache.end_write([key])
        self.assertFalse(self.cache.has_write_in_flight(key))

    def test_clear_empties_cache(self) -> None:
        self.cache.set(self.keys.list(), ())
        self.cache.clear()
        self.assertNotIn(self.keys.list(), self.cache)


if __name__ == "__main__":
    unittest.main()
