"""Chat and message entities shared by the cache, gateway and reconciler."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
import time
from typing import Any
from uuid import uuid4


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid4())


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _as_ms(value: Any) -> int | None:
    """Coerce epoch-ms integers and ISO-8601 strings to epoch milliseconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return int(text)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return int(parsed.timestamp() * 1000)
    return None


def _as_ids(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, Iterable):
        return tuple(str(item) for item in value if item is not None)
    return ()


@dataclass(frozen=True)
class Chat:
    """A conversation as seen by the chat list."""

    id: str
    title: str | None = None
    user_id: str | None = None
    created_at: int = 0
    updated_at: int = 0
    pinned_at: int | None = None
    archived_at: int | None = None
    deleted_at: int | None = None
    folder_id: str | None = None

    @property
    def is_pinned(self) -> bool:
        return self.pinned_at is not None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def with_changes(self, **changes: Any) -> Chat:
        return replace(self, **changes)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> Chat:
        """Build a chat from a server payload using camelCase or snake_case keys."""
        chat_id = _first(data, "id")
        if not chat_id:
            raise ValueError("Chat payload is missing an id.")
        created_at = _as_ms(_first(data, "createdAt", "created_at")) or 0
        return cls(
            id=str(chat_id),
            title=_first(data, "title"),
            user_id=_first(data, "userId", "user_id"),
            created_at=created_at,
            updated_at=_as_ms(_first(data, "updatedAt", "updated_at")) or created_at,
            pinned_at=_as_ms(_first(data, "pinnedAt", "pinned_at")),
            archived_at=_as_ms(_first(data, "archivedAt", "archived_at")),
            deleted_at=_as_ms(_first(data, "deletedAt", "deleted_at")),
            folder_id=_first(data, "folderId", "folder_id"),
        )


@dataclass(frozen=True)
class Message:
    """A single chat message.

    ``pending`` marks entries that only exist locally: optimistic writes that
    the server has not acknowledged yet and fragments of a live stream.
    ``created_at`` may be ``None`` for stream fragments; the reconciler assigns
    a stable value on first observation.
    """

    id: str
    chat_id: str
    role: Role
    content: str = ""
    attachment_ids: tuple[str, ...] = ()
    model: str | None = None
    created_at: int | None = None
    pending: bool = False

    def with_changes(self, **changes: Any) -> Message:
        return replace(self, **changes)

    @property
    def has_text(self) -> bool:
        return bool(self.content.strip())

    @classmethod
    def from_payload(
        cls, data: Mapping[str, Any], chat_id: str | None = None
    ) -> Message:
        """Build a confirmed message from a server payload."""
        message_id = _first(data, "id")
        if not message_id:
            raise ValueError("Message payload is missing an id.")
        owner = _first(data, "chatId", "chat_id") or chat_id
        if not owner:
            raise ValueError("Message payload is missing a chat id.")
        return cls(
            id=str(message_id),
            chat_id=str(owner),
            role=Role(str(_first(data, "role") or "").strip().lower()),
            content=str(_first(data, "content") or ""),
            attachment_ids=_as_ids(_first(data, "fileIds", "file_ids", "attachmentIds")),
            model=_first(data, "model"),
            created_at=_as_ms(_first(data, "createdAt", "created_at")),
        )


@dataclass(frozen=True)
class MessageDraft:
    """Body of a create-message request."""

    role: Role
    content: str
    id: str | None = None
    attachment_ids: tuple[str, ...] = ()
    model: str | None = None
    created_at: int | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.id:
            payload["id"] = self.id
        if self.attachment_ids:
            payload["fileIds"] = list(self.attachment_ids)
        if self.model:
            payload["model"] = self.model
        if self.created_at is not None:
            payload["createdAt"] = self.created_at
        return payload

