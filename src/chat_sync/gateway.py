"""Persistence gateway port and its HTTP and in-memory implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
import logging
from typing import Any

import httpx

from .exceptions import ChatSyncError, ConflictFailure, NetworkFailure
from .models import Chat, Message, MessageDraft, Role, new_id, now_ms

LOGGER = logging.getLogger(__name__)

TITLE_ELLIPSIS = "..."


def derive_title(content: str, max_length: int = 50) -> str:
    """Server-side title for a chat, computed from its first user message."""
    if len(content) <= max_length:
        return content
    return content[:max_length] + TITLE_ELLIPSIS


class PersistenceGateway(ABC):
    """Durable store for chats and messages, keyed by server identifiers.

    Implementations raise ``NetworkFailure`` when the store is unreachable or
    answers with an error, and ``ConflictFailure`` when the addressed chat or
    message no longer exists.
    """

    @abstractmethod
    async def list_chats(self, user_id: str) -> list[Chat]:
        """List the user's chats that are not soft-deleted."""

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Chat:
        """Fetch one chat."""

    @abstractmethod
    async def create_chat(
        self, chat_id: str | None = None, title: str | None = None
    ) -> Chat:
        """Create a chat, honouring a client-supplied id when given."""

    @abstractmethod
    async def update_chat(self, chat_id: str, title: str | None = None) -> Chat:
        """Update chat metadata and return the stored chat."""

    @abstractmethod
    async def delete_chat(self, chat_id: str) -> None:
        """Soft-delete a chat."""

    @abstractmethod
    async def pin_chat(self, chat_id: str) -> None: ...

    @abstractmethod
    async def unpin_chat(self, chat_id: str) -> None: ...

    @abstractmethod
    async def archive_chat(self, chat_id: str) -> None: ...

    @abstractmethod
    async def unarchive_chat(self, chat_id: str) -> None: ...

    @abstractmethod
    async def list_messages(self, chat_id: str) -> list[Message]:
        """List a chat's messages, oldest first."""

    @abstractmethod
    async def create_message(self, chat_id: str, draft: MessageDraft) -> Message:
        """Store a message; the server assigns id and timestamp when absent."""

    @abstractmethod
    async def delete_message(self, chat_id: str, message_id: str) -> None: ...


class HttpPersistenceGateway(PersistenceGateway):
    """REST client for the ``/api/chats`` routes of the chat server."""

    def __init__(
        self,
        base_url: str,
        chats_path: str = "/api/chats",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.chats_path = chats_path
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, endpoint: str = "", payload: dict[str, Any] | None = None
    ) -> Any:
        url = f"{self.chats_path}{endpoint}"
        try:
            response = await self._client.request(method, url, json=payload)
        except httpx.HTTPError as exc:
            raise NetworkFailure(f"{method} {url} failed: {exc}") from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if response.status_code == httpx.codes.NOT_FOUND:
            raise ConflictFailure(_error_text(data, f"{url} was not found."))
        if response.is_error:
            raise NetworkFailure(
                _error_text(data, f"{method} {url} returned {response.status_code}."),
                status_code=response.status_code,
            )
        return data

    async def list_chats(self, user_id: str) -> list[Chat]:
        data = await self._request("GET")
        chats = [Chat.from_payload(row) for row in data.get("chats", [])]
        # The server scopes by session; drop anything labelled for someone else.
        return [chat for chat in chats if chat.user_id in (None, user_id)]

    async def get_chat(self, chat_id: str) -> Chat:
        return Chat.from_payload(await self._request("GET", f"/{chat_id}"))

    async def create_chat(
        self, chat_id: str | None = None, title: str | None = None
    ) -> Chat:
        data = await self._request("POST", payload={"id": chat_id, "title": title})
        return Chat.from_payload(data)

    async def update_chat(self, chat_id: str, title: str | None = None) -> Chat:
        payload = {} if title is None else {"title": title}
        return Chat.from_payload(await self._request("PATCH", f"/{chat_id}", payload))

    async def delete_chat(self, chat_id: str) -> None:
        await self._request("DELETE", f"/{chat_id}")

    async def pin_chat(self, chat_id: str) -> None:
        await self._request("POST", f"/{chat_id}/pin")

    async def unpin_chat(self, chat_id: str) -> None:
        await self._request("DELETE", f"/{chat_id}/pin")

    async def archive_chat(self, chat_id: str) -> None:
        await self._request("POST", f"/{chat_id}/archive")

    async def unarchive_chat(self, chat_id: str) -> None:
        await self._request("DELETE", f"/{chat_id}/archive")

    async def list_messages(self, chat_id: str) -> list[Message]:
        data = await self._request("GET", f"/{chat_id}/messages")
        return [
            Message.from_payload(row, chat_id=chat_id) for row in data.get("messages", [])
        ]

    async def create_message(self, chat_id: str, draft: MessageDraft) -> Message:
        data = await self._request(
            "POST", f"/{chat_id}/messages", payload=draft.as_payload()
        )
        return Message.from_payload(data, chat_id=chat_id)

    async def delete_message(self, chat_id: str, message_id: str) -> None:
        await self._request("DELETE", f"/{chat_id}/messages/{message_id}")


def _error_text(data: Any, fallback: str) -> str:
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, str) and error.strip():
            return error
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return fallback


class InMemoryPersistenceGateway(PersistenceGateway):
    """Process-local store reproducing the chat server's write semantics.

    Mirrors the server: a chat is created implicitly by its first message,
    the first user message sets the title, writes bump ``updated_at``, and
    deletes are soft. Setting ``offline`` makes every call fail with
    ``NetworkFailure``.
    """

    def __init__(
        self,
        user_id: str,
        clock: Callable[[], int] = now_ms,
        title_max_length: int = 50,
    ) -> None:
        self.user_id = user_id
        self.offline = False
        self.calls: list[str] = []
        self._clock = clock
        self._title_max_length = title_max_length
        self._chats: dict[str, Chat] = {}
        self._messages: dict[str, list[Message]] = {}

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if self.offline:
            raise NetworkFailure(f"{operation} failed: store is offline.")

    def _live_chat(self, chat_id: str) -> Chat:
        chat = self._chats.get(chat_id)
        if chat is None or chat.is_deleted:
            raise ConflictFailure(f"Chat {chat_id!r} not found.")
        return chat

    def _store(self, chat: Chat) -> Chat:
        self._chats[chat.id] = chat
        return chat

    def _touch(self, chat_id: str, **changes: Any) -> Chat:
        chat = self._live_chat(chat_id)
        return self._store(replace(chat, updated_at=self._clock(), **changes))

    async def list_chats(self, user_id: str) -> list[Chat]:
        self._enter("list_chats")
        chats = [
            chat
            for chat in self._chats.values()
            if chat.user_id == user_id and not chat.is_deleted
        ]
        return sorted(chats, key=lambda chat: chat.updated_at, reverse=True)

    async def get_chat(self, chat_id: str) -> Chat:
        self._enter("get_chat")
        return self._live_chat(chat_id)

    async def create_chat(
        self, chat_id: str | None = None, title: str | None = None
    ) -> Chat:
        self._enter("create_chat")
        return self._create_chat(chat_id or new_id(), title)

    def _create_chat(self, chat_id: str, title: str | None) -> Chat:
        if chat_id in self._chats:
            raise ChatSyncError(f"Chat {chat_id!r} already exists.")
        now = self._clock()
        self._messages[chat_id] = []
        return self._store(
            Chat(
                id=chat_id,
                title=title,
                user_id=self.user_id,
                created_at=now,
                updated_at=now,
            )
        )

    async def update_chat(self, chat_id: str, title: str | None = None) -> Chat:
        self._enter("update_chat")
        if title is None:
            return self._live_chat(chat_id)
        return self._touch(chat_id, title=title)

    async def delete_chat(self, chat_id: str) -> None:
        self._enter("delete_chat")
        self._touch(chat_id, deleted_at=self._clock())

    async def pin_chat(self, chat_id: str) -> None:
        self._enter("pin_chat")
        self._touch(chat_id, pinned_at=self._clock())

    async def unpin_chat(self, chat_id: str) -> None:
        self._enter("unpin_chat")
        self._touch(chat_id, pinned_at=None)

    async def archive_chat(self, chat_id: str) -> None:
        self._enter("archive_chat")
        self._touch(chat_id, archived_at=self._clock())

    async def unarchive_chat(self, chat_id: str) -> None:
        self._enter("unarchive_chat")
        self._touch(chat_id, archived_at=None)

    async def list_messages(self, chat_id: str) -> list[Message]:
        self._enter("list_messages")
        self._live_chat(chat_id)
        return sorted(self._messages[chat_id], key=lambda message: message.created_at or 0)

    async def create_message(self, chat_id: str, draft: MessageDraft) -> Message:
        self._enter("create_message")
        if chat_id not in self._chats:
            self._create_chat(chat_id, None)
        self._live_chat(chat_id)
        if not draft.content:
            raise NetworkFailure("role and content are required", status_code=400)

        message = Message(
            id=draft.id or new_id(),
            chat_id=chat_id,
            role=draft.role,
            content=draft.content,
            attachment_ids=draft.attachment_ids,
            model=draft.model,
            created_at=self._clock(),
        )
        bucket = self._messages[chat_id]
        if any(existing.id == message.id for existing in bucket):
            raise ChatSyncError(f"Message {message.id!r} already exists.")
        bucket.append(message)

        if len(bucket) == 1 and message.role is Role.USER:
            self._touch(chat_id, title=derive_title(message.content, self._title_max_length))
        else:
            self._touch(chat_id)
        return message

    async def delete_message(self, chat_id: str, message_id: str) -> None:
        self._enter("delete_message")
        self._live_chat(chat_id)
        bucket = self._messages[chat_id]
        remaining = [message for message in bucket if message.id != message_id]
        if len(remaining) == len(bucket):
            raise ConflictFailure(f"Message {message_id!r} not found.")
        self._messages[chat_id] = remaining
