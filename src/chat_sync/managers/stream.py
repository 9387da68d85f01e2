"""Stream management for assistant completions.

Drives one chat's ``StreamSession`` through submit, fragments, completion,
failure and interruption, and persists the finished reply through the
mutation executor.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
import logging
from typing import TYPE_CHECKING

from ..events import STREAM_STATUS_CHANGED
from ..exceptions import ChatSyncError, NetworkFailure, PartialStreamFailure
from ..formatter import DEFAULT_MAX_HISTORY_MESSAGES, TransportMessage, format_history
from ..models import Message, Role, new_id
from ..mutations import create_message
from ..state import ACTIVE_STATUSES, RESUMABLE_STATUSES, StreamSession, StreamStatus

if TYPE_CHECKING:
    from ..cache import LocalCache
    from ..events import EventBus
    from ..gateway import PersistenceGateway
    from ..mutations import MutationExecutor
    from ..reconciler import MessageReconciler
    from ..task_manager import TaskManager
    from ..transport import StreamChannel, StreamingTransport

LOGGER = logging.getLogger(__name__)


class StreamManager:
    """Manages the completion stream of a single chat.

    Responsibilities:
    - Format history and open the transport channel
    - Fold fragments into the in-flight assistant message
    - Persist the finished reply under the id it streamed with
    - Discard partial output on failure or interruption
    """

    def __init__(
        self,
        chat_id: str,
        cache: LocalCache,
        gateway: PersistenceGateway,
        transport: StreamingTransport,
        executor: MutationExecutor,
        reconciler: MessageReconciler,
        task_manager: TaskManager,
        *,
        model: str | None = None,
        max_history_messages: int = DEFAULT_MAX_HISTORY_MESSAGES,
        events: EventBus | None = None,
    ) -> None:
        """Initialize stream manager.

        Args:
            chat_id: Chat whose completions this manager drives
            cache: Local cache holding the persisted message list
            gateway: Persistence gateway used to store finished replies
            transport: Streaming transport that opens completion channels
            executor: Mutation executor for the reply write
            reconciler: Reconciler whose timestamp registry stream messages share
            task_manager: TaskManager that owns the reader task
            model: Model name sent with the request and stored on the reply
            max_history_messages: Bound on the history sent to the transport
            events: Optional event bus for status change notifications
        """
        self.chat_id = chat_id
        self.cache = cache
        self.gateway = gateway
        self.transport = transport
        self.executor = executor
        self.reconciler = reconciler
        self.task_manager = task_manager
        self.model = model
        self.max_history_messages = max_history_messages
        self.events = events
        self.session = StreamSession(chat_id)
        self._channel: StreamChannel | None = None
        self._on_change: Callable[[], None] | None = None

    @property
    def task_name(self) -> str:
        return f"stream:{self.chat_id}"

    @property
    def status(self) -> StreamStatus:
        return self.session.status

    @property
    def error(self) -> Exception | None:
        return self.session.error

    def on_change(self, callback: Callable[[], None] | None) -> None:
        """Register a callback run on every fragment and status change."""
        self._on_change = callback

    def persisted_messages(self) -> list[Message]:
        """Cached messages of this chat, stabilized and ordered."""
        stored = self.cache.get(self.cache.keys.messages(self.chat_id)) or ()
        return self.reconciler.reconcile(stored)

    async def begin(self, user_message: Message | None = None) -> bool:
        """Claim the channel for a new turn (``idle/done/error -> submitted``).

        Returns:
            False if a completion is already running for this chat
        """
        previous = self.session.status
        if not await self.session.transition_if(RESUMABLE_STATUSES, StreamStatus.SUBMITTED):
            return False
        self.session.discard()
        self.session.error = None
        self.session.user_echo = user_message
        await self._announce(previous, StreamStatus.SUBMITTED)
        return True

    async def abandon(self, error: ChatSyncError) -> None:
        """Give up a claimed turn before any channel was opened."""
        await self._fail(error)

    def start(self, attachment_ids: Sequence[str] = ()) -> asyncio.Task[None]:
        """Format history from the cache and spawn the reader task.

        The session must already be ``submitted`` (see ``begin``).
        """
        if self.session.status is not StreamStatus.SUBMITTED:
            raise RuntimeError(
                f"Cannot start a stream while {self.session.status.value}."
            )
        history = format_history(self.persisted_messages(), self.max_history_messages)
        return self.task_manager.spawn(
            self._read(history, tuple(attachment_ids)), name=self.task_name
        )

    async def resume(self) -> bool:
        """Re-request a completion for the trailing user turn.

        Returns:
            False while a completion is running or when the last persisted
            message is not a user message
        """
        if self.session.is_active:
            return False
        persisted = self.persisted_messages()
        if not persisted or persisted[-1].role is not Role.USER:
            return False
        if not await self.begin():
            return False
        self.start(persisted[-1].attachment_ids)
        return True

    async def stop(self) -> bool:
        """Interrupt the active stream and drop its partial reply.

        The user message that triggered the stream stays where it is.

        Returns:
            True if a stream was interrupted, False if none was active
        """
        previous = self.session.status
        if not await self.session.transition_if(ACTIVE_STATUSES, StreamStatus.IDLE):
            return False
        channel = self._channel
        await self.task_manager.cancel(self.task_name)
        if channel is not None:
            await channel.cancel()
        self._channel = None
        self._discard()
        LOGGER.info(
            "stream.stopped", extra={"event": "stream.stopped", "chat_id": self.chat_id}
        )
        await self._announce(previous, StreamStatus.IDLE)
        return True

    async def wait(self) -> None:
        """Await the reader task, if one is running."""
        task = self.task_manager.get(self.task_name)
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    async def _read(
        self, history: Sequence[TransportMessage], attachment_ids: tuple[str, ...]
    ) -> None:
        reply_id = new_id()
        try:
            channel = await self.transport.open(
                self.chat_id, history, self.model, attachment_ids
            )
            self._channel = channel
            async for fragment in channel:
                if not await self._on_fragment(reply_id, fragment):
                    return
        except Exception as exc:  # noqa: BLE001 - any channel failure ends the turn.
            self._channel = None
            await self._fail(exc)
            return
        self._channel = None
        await self._complete()

    async def _on_fragment(self, reply_id: str, fragment: str) -> bool:
        if not fragment:
            return True
        previous = self.session.status
        if not await self.session.transition_if(ACTIVE_STATUSES, StreamStatus.STREAMING):
            return False
        if self.session.reply is None:
            reply = Message(
                id=reply_id,
                chat_id=self.chat_id,
                role=Role.ASSISTANT,
                model=self.model,
                pending=True,
            )
            stamp = self.reconciler.timestamps.stabilize(reply)
            self.session.reply = reply.with_changes(created_at=stamp)
        self.session.append_fragment(fragment)
        if previous is not StreamStatus.STREAMING:
            await self._announce(previous, StreamStatus.STREAMING)
        else:
            self._changed()
        return True

    async def _complete(self) -> None:
        if not self.session.is_active:
            return
        reply = self.session.reply
        if reply is not None and reply.has_text:
            result = await self.executor.run(
                create_message(self.cache, self.gateway, reply)
            )
            if not result.ok:
                await self._enter_error(result.error or NetworkFailure("Reply was not stored."))
                return
        elif reply is not None:
            self.reconciler.discard([reply])

        previous = self.session.status
        if not await self.session.transition_if(ACTIVE_STATUSES, StreamStatus.DONE):
            return
        self.session.discard()
        LOGGER.info(
            "stream.completed",
            extra={
                "event": "stream.completed",
                "chat_id": self.chat_id,
                "stored": reply is not None and reply.has_text,
            },
        )
        await self._announce(previous, StreamStatus.DONE)

    async def _fail(self, exc: BaseException) -> None:
        received = self.session.fragment_count
        if received:
            error: ChatSyncError = PartialStreamFailure(
                f"Stream dropped after {received} fragment(s): {exc}"
            )
        elif isinstance(exc, ChatSyncError):
            error = exc
        else:
            error = NetworkFailure(f"Stream failed: {exc}")
        await self._enter_error(error)

    async def _enter_error(self, error: ChatSyncError) -> None:
        received = self.session.fragment_count
        previous = self.session.status
        if not await self.session.transition_if(ACTIVE_STATUSES, StreamStatus.ERROR):
            return
        self._discard()
        self.session.error = error
        LOGGER.warning(
            "stream.failed",
            extra={
                "event": "stream.failed",
                "chat_id": self.chat_id,
                "error_type": error.__class__.__name__,
                "fragments": received,
            },
        )
        await self._announce(previous, StreamStatus.ERROR)

    def _discard(self) -> None:
        partial = self.session.discard()
        if partial is not None:
            self.reconciler.discard([partial])

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    async def _announce(self, previous: StreamStatus, current: StreamStatus) -> None:
        self._changed()
        if self.events is None or previous is current:
            return
        await self.events.publish(
            STREAM_STATUS_CHANGED,
            {
                "chat_id": self.chat_id,
                "from_status": previous.value,
                "to_status": current.value,
            },
            source="stream",
        )
