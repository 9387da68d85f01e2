"""Bounded, provider-agnostic history for new completion requests."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .models import Message, Role

DEFAULT_MAX_HISTORY_MESSAGES = 64


@dataclass(frozen=True)
class TransportMessage:
    """Positional, schema-free form of one conversation turn."""

    id: str
    role: str
    content: str

    def as_payload(self) -> dict[str, Any]:
        return {"id": self.id, "role": self.role, "content": self.content}


def _is_replayable(message: Message) -> bool:
    # Empty assistant turns are aborted completions, not real replies.
    return message.role is not Role.ASSISTANT or message.has_text


def format_history(
    persisted: Sequence[Message],
    max_messages: int = DEFAULT_MAX_HISTORY_MESSAGES,
) -> list[TransportMessage]:
    """Trim to the newest ``max_messages`` and drop empty assistant turns.

    Pure: the same input always yields the same output, so a retry may
    re-format history without re-fetching it.
    """
    limit = max(1, max_messages)
    window = list(persisted)[-limit:]
    return [
        TransportMessage(id=message.id, role=message.role.value, content=message.content)
        for message in window
        if _is_replayable(message)
    ]
