"""Per-chat stream state machine with lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging

from .models import Message

LOGGER = logging.getLogger(__name__)


class StreamStatus(str, Enum):
    """Lifecycle of the completion channel of one chat."""

    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({StreamStatus.SUBMITTED, StreamStatus.STREAMING})
RESUMABLE_STATUSES = frozenset({StreamStatus.IDLE, StreamStatus.DONE, StreamStatus.ERROR})

_ALLOWED: dict[StreamStatus, frozenset[StreamStatus]] = {
    StreamStatus.IDLE: frozenset({StreamStatus.SUBMITTED}),
    StreamStatus.SUBMITTED: frozenset(
        {StreamStatus.STREAMING, StreamStatus.DONE, StreamStatus.ERROR, StreamStatus.IDLE}
    ),
    StreamStatus.STREAMING: frozenset(
        {StreamStatus.STREAMING, StreamStatus.DONE, StreamStatus.ERROR, StreamStatus.IDLE}
    ),
    StreamStatus.DONE: frozenset({StreamStatus.SUBMITTED, StreamStatus.IDLE}),
    StreamStatus.ERROR: frozenset({StreamStatus.SUBMITTED, StreamStatus.IDLE}),
}


class InvalidTransition(RuntimeError):
    """Raised on a transition the state machine does not allow."""


class StreamSession:
    """Transient state of the active completion for one chat.

    Holds the partially built assistant reply and the echo of the user turn
    that triggered it. Nothing here is persisted.
    """

    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        self._lock = asyncio.Lock()
        self._status = StreamStatus.IDLE
        self.user_echo: Message | None = None
        self.reply: Message | None = None
        self.error: Exception | None = None
        self.fragment_count = 0

    @property
    def status(self) -> StreamStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._status in ACTIVE_STATUSES

    @property
    def messages(self) -> list[Message]:
        """In-flight messages to merge with the persisted history."""
        return [message for message in (self.user_echo, self.reply) if message is not None]

    async def get_status(self) -> StreamStatus:
        async with self._lock:
            return self._status

    async def transition_to(self, new_status: StreamStatus) -> StreamStatus:
        """Move to ``new_status``, rejecting transitions the machine forbids."""
        async with self._lock:
            return self._transition(new_status)

    async def transition_if(
        self,
        expected: frozenset[StreamStatus],
        new_status: StreamStatus,
    ) -> bool:
        """Transition only when the current status is one of ``expected``."""
        async with self._lock:
            if self._status not in expected:
                return False
            self._transition(new_status)
            return True

    def _transition(self, new_status: StreamStatus) -> StreamStatus:
        previous = self._status
        if new_status not in _ALLOWED[previous]:
            raise InvalidTransition(f"{previous.value} -> {new_status.value}")
        self._status = new_status
        if previous is not new_status:
            LOGGER.debug(
                "stream.status",
                extra={
                    "event": "stream.status",
                    "chat_id": self.chat_id,
                    "from_status": previous.value,
                    "to_status": new_status.value,
                },
            )
        return new_status

    def append_fragment(self, text: str) -> Message | None:
        if self.reply is None:
            return None
        self.fragment_count += 1
        self.reply = self.reply.with_changes(content=self.reply.content + text)
        return self.reply

    def discard(self) -> Message | None:
        """Drop in-flight content and return the partial reply, if any."""
        partial = self.reply
        self.user_echo = None
        self.reply = None
        self.fragment_count = 0
        return partial
