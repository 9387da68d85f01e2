"""CLI entrypoint for chatsync."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
import sys

from .cache import LocalCache
from .chat import ChatController
from .config import SyncSettings, load_config
from .exceptions import ChatSyncError
from .gateway import HttpPersistenceGateway
from .logging_utils import configure_logging
from .transport import HttpStreamingTransport


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatsync",
        description="chatsync - send a prompt to a self-hosted chat server",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument("--config", type=Path, help="Path to a config.toml file")
    parser.add_argument("--chat", help="Continue an existing chat instead of starting one")
    parser.add_argument("--user", help="User id the local cache is scoped to")
    parser.add_argument("--model", help="Model to request the completion from")
    parser.add_argument(
        "prompt",
        nargs="?",
        help="Message to send; without it the chat list is printed",
    )
    return parser


class _ReplyPrinter:
    """Write the streaming reply to stdout as fragments arrive."""

    def __init__(self, controller: ChatController) -> None:
        self.controller = controller
        self._written = 0
        self._reply_id: str | None = None

    def __call__(self) -> None:
        reply = self.controller.stream.session.reply
        if reply is None:
            return
        if reply.id != self._reply_id:
            self._reply_id = reply.id
            self._written = 0
        sys.stdout.write(reply.content[self._written:])
        sys.stdout.flush()
        self._written = len(reply.content)


async def _run(args: argparse.Namespace, config: dict) -> int:
    server = config["server"]
    user_id = args.user or server["user_id"]
    if not user_id:
        print("chatsync: a user id is required (--user or server.user_id)", file=sys.stderr)
        return 2

    gateway = HttpPersistenceGateway(
        server["base_url"], server["chats_path"], server["timeout_seconds"]
    )
    transport = HttpStreamingTransport(
        server["base_url"], server["chat_path"], server["timeout_seconds"]
    )
    controller = ChatController(
        LocalCache(user_id),
        gateway,
        transport,
        chat_id=args.chat,
        model=args.model or server["model"] or None,
        settings=SyncSettings.from_config(config),
    )
    try:
        await controller.load()
        if not args.prompt:
            for chat in controller.chats:
                marker = "*" if chat.is_pinned else " "
                print(f"{marker} {chat.id}  {chat.title or '(untitled)'}")
            return 0

        controller.subscribe(_ReplyPrinter(controller))
        result = await controller.submit(args.prompt)
        if not result.ok:
            print(f"chatsync: {result.error}", file=sys.stderr)
            return 1
        await controller.wait_idle()
        print()
        if controller.error is not None:
            print(f"chatsync: {controller.error}", file=sys.stderr)
            return 1
        return 0
    except ChatSyncError as exc:
        print(f"chatsync: {exc}", file=sys.stderr)
        return 1
    finally:
        await controller.close()
        await gateway.aclose()
        await transport.aclose()


def main(argv: Sequence[str] | None = None) -> None:
    """Load configuration, handle CLI flags, and send one prompt."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("chatsync")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"chatsync {version}")
        return

    config = load_config(args.config)
    configure_logging(config["logging"])
    code = asyncio.run(_run(args, config))
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
