"""Tests for configuration loading and validation."""

from __future__ import annotations

import tempfile
from pathlib import Path
import unittest

from chat_sync.config import DEFAULT_CONFIG, SyncSettings, load_config


class ConfigTests(unittest.TestCase):
    """Validate config merge and fallback behavior."""

    def test_missing_config_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config = load_config(config_path=config_path)
            self.assertEqual(config, DEFAULT_CONFIG)
            self.assertEqual(config["server"]["chats_path"], "/api/chats")
            self.assertEqual(config["server"]["chat_path"], "/api/chat")
            self.assertEqual(config["sync"]["max_history_messages"], 64)
            self.assertEqual(config["sync"]["dedup_window_ms"], 5000)
            self.assertEqual(config["sync"]["timestamp_similarity_ms"], 5000)
            self.assertEqual(
                set(config["sync"]),
                {
                    "max_history_messages",
                    "dedup_window_ms",
                    "timestamp_similarity_ms",
                    "refresh_after_settle",
                },
            )

    def test_partial_config_overrides_selected_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                """
[server]
base_url = "https://chat.example.com/"
user_id = " alice "

[sync]
max_history_messages = 16
refresh_after_settle = false
                """.strip(),
                encoding="utf-8",
            )
            config = load_config(config_path=config_path)
            self.assertEqual(config["server"]["base_url"], "https://chat.example.com")
            self.assertEqual(config["server"]["user_id"], "alice")
            self.assertEqual(config["sync"]["max_history_messages"], 16)
            self.assertFalse(config["sync"]["refresh_after_settle"])
            self.assertEqual(
                config["logging"]["level"], DEFAULT_CONFIG["logging"]["level"]
            )

    def test_invalid_values_fallback_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                """
[server]
base_url = "ftp://chat.example.com"

[sync]
dedup_window_ms = 0
                """.strip(),
                encoding="utf-8",
            )
            config = load_config(config_path=config_path)
            self.assertEqual(
                config["server"]["base_url"], DEFAULT_CONFIG["server"]["base_url"]
            )
            self.assertEqual(
                config["sync"]["dedup_window_ms"],
                DEFAULT_CONFIG["sync"]["dedup_window_ms"],
            )

    def test_unparsable_toml_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text("[server\nbase_url = ", encoding="utf-8")
            self.assertEqual(load_config(config_path=config_path), DEFAULT_CONFIG)

    def test_sync_settings_from_config(self) -> None:
        settings = SyncSettings.from_config(
            {"sync": {"max_history_messages": 8, "timestamp_similarity_ms": 0}}
        )
        self.assertEqual(settings.max_history_messages, 8)
        self.assertEqual(settings.timestamp_similarity_ms, 0)
        self.assertEqual(settings.dedup_window_ms, 5000)
        self.assertEqual(SyncSettings.from_config({}), SyncSettings())


if __name__ == "__main__":
    unittest.main()
