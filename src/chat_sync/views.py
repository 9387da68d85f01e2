"""Pure helpers that derive and rewrite cached chat-list and message-list values."""

from __future__ import annotations

from collections.abc import Iterable

from .models import Chat, Message


def order_chats(chats: Iterable[Chat]) -> tuple[Chat, ...]:
    """Pinned chats first, then most recently updated first."""
    return tuple(
        sorted(chats, key=lambda chat: (not chat.is_pinned, -chat.updated_at))
    )


def visible_chats(
    chats: Iterable[Chat] | None, include_archived: bool = False
) -> tuple[Chat, ...]:
    """Default list view: no soft-deleted chats, archived ones only on request."""
    return order_chats(
        chat
        for chat in chats or ()
        if not chat.is_deleted and (include_archived or not chat.is_archived)
    )


def find_chat(chats: Iterable[Chat] | None, chat_id: str) -> Chat | None:
    for chat in chats or ():
        if chat.id == chat_id:
            return chat
    return None


def upsert_chat(chats: Iterable[Chat] | None, chat: Chat) -> tuple[Chat, ...]:
    """Replace the chat with the same id or add it, keeping list order."""
    current = tuple(chats or ())
    if find_chat(current, chat.id) is None:
        return order_chats((chat, *current))
    return order_chats(chat if item.id == chat.id else item for item in current)


def without_chat(chats: Iterable[Chat] | None, chat_id: str) -> tuple[Chat, ...]:
    return tuple(chat for chat in chats or () if chat.id != chat_id)


def leading_stamp(chats: Iterable[Chat] | None, at: int) -> int:
    """An ``updated_at`` that sorts ahead of every chat in ``chats``.

    Listed chats carry server timestamps, so a client ``at`` alone loses to
    them whenever the server clock runs ahead.
    """
    newest = max((chat.updated_at for chat in chats or ()), default=at - 1)
    return max(at, newest + 1)


def touch_chat(
    chats: Iterable[Chat] | None, chat_id: str, at: int
) -> tuple[Chat, ...]:
    """Bump ``updated_at`` so the chat moves to the front of its group."""
    current = tuple(chats or ())
    stamp = leading_stamp(current, at)
    return order_chats(
        chat.with_changes(updated_at=stamp) if chat.id == chat_id else chat
        for chat in current
    )


def append_message(
    messages: Iterable[Message] | None, message: Message
) -> tuple[Message, ...]:
    return (*(messages or ()), message)


def settle_message(
    messages: Iterable[Message] | None, local_id: str, confirmed: Message
) -> tuple[Message, ...]:
    """Swap an optimistic entry for its server-confirmed counterpart.

    Matches the optimistic id first, then an entry that already carries the
    confirmed id (a refresh may have inserted it), and appends otherwise.
    """
    current = list(messages or ())
    for target in (local_id, confirmed.id):
        for index, message in enumerate(current):
            if message.id == target:
                current[index] = confirmed
                return tuple(
                    item
                    for position, item in enumerate(current)
                    if position == index or item.id != confirmed.id
                )
    current.append(confirmed)
    return tuple(current)


def without_message(
    messages: Iterable[Message] | None, message_id: str
) -> tuple[Message, ...]:
    return tuple(message for message in messages or () if message.id != message_id)


def merge_refreshed_messages(
    local: Iterable[Message] | None, server: Iterable[Message]
) -> tuple[Message, ...]:
    """Take the server list and keep local entries the server has not seen yet."""
    confirmed = tuple(server)
    known = {message.id for message in confirmed}
    unconfirmed = tuple(
        message for message in local or () if message.pending and message.id not in known
    )
    return confirmed + unconfirmed
