"""Per-chat facade over the cache, mutation executor and stream manager."""

from __future__ import annotations

from collections.abc import Callable, Sequence
import logging

from .cache import CacheKey, LocalCache
from .config import SyncSettings
from .events import EventBus
from .exceptions import ValidationFailure
from .gateway import PersistenceGateway
from .managers import ConversationManager, StreamManager
from .models import Chat, Message, Role, new_id, now_ms
from .mutations import (
    Clock,
    MutationExecutor,
    MutationKind,
    MutationResult,
    create_message,
    delete_message,
)
from .reconciler import MessageReconciler
from .refresh import CacheRefresher
from .state import StreamStatus
from .task_manager import TaskManager
from .transport import StreamingTransport
from .views import merge_refreshed_messages

LOGGER = logging.getLogger(__name__)

Subscriber = Callable[[], None]


class ChatController:
    """Everything a view needs to render and drive one chat.

    ``messages`` is always the reconciled sequence: persisted messages from the
    cache merged with the live stream. Every write returns a
    ``MutationResult`` once it has settled; subscribers are called whenever
    the cache entries of this chat or the stream change.

    Pass ``chat_id=None`` to start a brand-new chat. Its id is generated here
    and the chat is created on the server together with the first message.
    """

    def __init__(
        self,
        cache: LocalCache,
        gateway: PersistenceGateway,
        transport: StreamingTransport,
        chat_id: str | None = None,
        *,
        model: str | None = None,
        settings: SyncSettings | None = None,
        clock: Clock = now_ms,
        events: EventBus | None = None,
        tasks: TaskManager | None = None,
    ) -> None:
        self.cache = cache
        self.gateway = gateway
        self.settings = settings or SyncSettings()
        self.clock = clock
        self.events = events or EventBus()
        self.tasks = tasks or TaskManager()
        self.is_new_chat = chat_id is None
        self.chat_id = chat_id or new_id()

        self.refresher = CacheRefresher(cache, gateway)
        self.executor = MutationExecutor(
            cache,
            tasks=self.tasks,
            refresher=self.refresher,
            events=self.events,
            refresh_after_settle=self.settings.refresh_after_settle,
        )
        self.reconciler = MessageReconciler(self.settings, clock=clock)
        self.conversations = ConversationManager(cache, gateway, self.executor, clock)
        self.stream = StreamManager(
            self.chat_id,
            cache,
            gateway,
            transport,
            self.executor,
            self.reconciler,
            self.tasks,
            model=model,
            max_history_messages=self.settings.max_history_messages,
            events=self.events,
        )
        self.stream.on_change(self._notify)
        self._subscribers: list[Subscriber] = []
        self._unsubscribe_cache = cache.subscribe(self._on_cache_write)

    @property
    def model(self) -> str | None:
        return self.stream.model

    @model.setter
    def model(self, value: str | None) -> None:
        self.stream.model = value

    @property
    def status(self) -> StreamStatus:
        return self.stream.status

    @property
    def error(self) -> Exception | None:
        """Error recorded by the last failed stream, if any."""
        return self.stream.error

    @property
    def chat(self) -> Chat | None:
        return self.conversations.get(self.chat_id)

    @property
    def chats(self) -> tuple[Chat, ...]:
        return self.conversations.chats()

    @property
    def messages(self) -> list[Message]:
        session = self.stream.session
        return self.reconciler.reconcile(
            self.cache.get(self.cache.keys.messages(self.chat_id)) or (),
            session.messages,
            is_streaming_active=session.is_active,
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback()`` whenever ``messages``, ``chats`` or ``status`` may
        have changed. Returns a function that removes the subscription."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def load(self) -> list[Message]:
        """Fetch the chat list and, for an existing chat, its messages.

        Raises:
            NetworkFailure: If the server could not be reached
            ConflictFailure: If the chat no longer exists
        """
        await self.conversations.load_chats()
        if not self.is_new_chat:
            key = self.cache.keys.messages(self.chat_id)
            server = await self.gateway.list_messages(self.chat_id)
            if not self.cache.has_write_in_flight(key):
                self.cache.set(key, merge_refreshed_messages(self.cache.get(key), server))
        return self.messages

    async def submit(
        self, content: str, attachment_ids: Sequence[str] = ()
    ) -> MutationResult:
        """Persist a user message and start streaming the reply.

        Returns once the user message has settled. The reply streams in the
        background; ``wait_idle`` awaits it.
        """
        message = Message(
            id=new_id(),
            chat_id=self.chat_id,
            role=Role.USER,
            content=content.strip(),
            attachment_ids=tuple(attachment_ids),
            created_at=self.clock(),
        )
        mutation = create_message(
            self.cache, self.gateway, message, new_chat=self.is_new_chat, clock=self.clock
        )
        rejected = self.executor.check(mutation)
        if rejected is not None:
            return rejected
        if not await self.stream.begin(message):
            return MutationResult(
                MutationKind.CREATE_MESSAGE,
                self.chat_id,
                ok=False,
                error=ValidationFailure("A reply is still streaming for this chat."),
            )

        try:
            result = await self.executor.run(mutation)
        except BaseException:
            await self.stream.stop()
            raise
        if not result.ok:
            await self.stream.abandon(result.error)
            return result
        self.is_new_chat = False
        # A stop() issued while the message was settling cancels the turn.
        if self.stream.status is StreamStatus.SUBMITTED:
            self.stream.start(message.attachment_ids)
        return result

    async def stop(self) -> bool:
        return await self.stream.stop()

    async def resume(self) -> bool:
        return await self.stream.resume()

    async def pin(self, chat_id: str | None = None) -> MutationResult:
        return await self.conversations.pin(chat_id or self.chat_id)

    async def unpin(self, chat_id: str | None = None) -> MutationResult:
        return await self.conversations.unpin(chat_id or self.chat_id)

    async def archive(self, chat_id: str | None = None) -> MutationResult:
        return await self.conversations.archive(chat_id or self.chat_id)

    async def unarchive(self, chat_id: str | None = None) -> MutationResult:
        return await self.conversations.unarchive(chat_id or self.chat_id)

    async def rename(self, title: str, chat_id: str | None = None) -> MutationResult:
        return await self.conversations.rename(chat_id or self.chat_id, title)

    async def delete(self, chat_id: str | None = None) -> MutationResult:
        target = chat_id or self.chat_id
        if target == self.chat_id:
            await self.stream.stop()
        return await self.conversations.delete(target)

    async def delete_message(self, message_id: str) -> MutationResult:
        result = await self.executor.run(
            delete_message(self.cache, self.gateway, self.chat_id, message_id)
        )
        if result.ok:
            self.reconciler.timestamps.forget([message_id])
        return result

    async def wait_idle(self) -> None:
        """Await the running stream and every scheduled refresh."""
        await self.tasks.await_all()

    async def close(self) -> None:
        await self.stream.stop()
        await self.tasks.cancel_all()
        self._unsubscribe_cache()
        self._subscribers.clear()

    def _on_cache_write(self, key: CacheKey, _value: object) -> None:
        keys = self.cache.keys
        if key == keys.list() or key[: len(keys.detail(self.chat_id))] == keys.detail(
            self.chat_id
        ):
            self._notify()

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001 - a broken view must not stop the stream.
                LOGGER.error(
                    "chat.subscriber_failed",
                    extra={
                        "event": "chat.subscriber_failed",
                        "chat_id": self.chat_id,
                        "error_type": exc.__class__.__name__,
                    },
                )
