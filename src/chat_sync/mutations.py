"""Optimistic mutation protocol: snapshot, optimistic apply, settle.

Every write the client issues goes through ``MutationExecutor.run``. A
mutation kind only supplies its own pieces (which cache keys it touches, how
to apply it locally, which gateway call confirms it and how to fold the
server answer back in); the control flow, rollback and post-settle refresh
live here once.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any

from .cache import CacheKey, CacheSnapshot, LocalCache
from .events import MUTATION_SETTLED, EventBus
from .exceptions import ChatSyncError, ValidationFailure
from .models import Chat, Message, MessageDraft, now_ms
from .views import (
    append_message,
    find_chat,
    leading_stamp,
    settle_message,
    touch_chat,
    upsert_chat,
    without_chat,
    without_message,
)

if TYPE_CHECKING:
    from .gateway import PersistenceGateway
    from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], int]
Refresher = Callable[[Iterable[CacheKey]], Awaitable[None]]


class MutationKind(str, Enum):
    CREATE_MESSAGE = "create_message"
    CREATE_CHAT = "create_chat"
    PIN = "pin"
    UNPIN = "unpin"
    ARCHIVE = "archive"
    UNARCHIVE = "unarchive"
    DELETE = "delete"
    RENAME = "rename"
    DELETE_MESSAGE = "delete_message"


@dataclass(frozen=True)
class MutationResult:
    """Tagged outcome of a mutation, returned once the cache has settled."""

    kind: MutationKind
    chat_id: str
    ok: bool
    value: Any = None
    error: ChatSyncError | None = None

    @property
    def error_type(self) -> str | None:
        return None if self.error is None else self.error.__class__.__name__


@dataclass
class OptimisticMutation:
    """Everything the executor needs to run one write."""

    kind: MutationKind
    chat_id: str
    keys: tuple[CacheKey, ...]
    apply: Callable[[LocalCache], None]
    call: Callable[[], Awaitable[Any]]
    settle: Callable[[LocalCache, Any], None] | None = None
    validate: Callable[[], None] | None = None
    refresh_keys: tuple[CacheKey, ...] = ()


@dataclass
class OptimisticMutationContext:
    """Pre-mutation snapshot, kept only until the mutation settles."""

    mutation: OptimisticMutation
    snapshot: CacheSnapshot


class MutationExecutor:
    """Run optimistic mutations against one user's cache."""

    def __init__(
        self,
        cache: LocalCache,
        tasks: TaskManager | None = None,
        refresher: Refresher | None = None,
        events: EventBus | None = None,
        refresh_after_settle: bool = True,
    ) -> None:
        self.cache = cache
        self.tasks = tasks
        self.refresher = refresher
        self.events = events
        self.refresh_after_settle = refresh_after_settle

    async def run(self, mutation: OptimisticMutation) -> MutationResult:
        """Apply ``mutation`` optimistically and settle it against the server.

        Domain failures (``ChatSyncError``) are returned as a failed result
        after the snapshot has been restored. Anything else is re-raised, also
        after restoring.
        """
        rejected = self.check(mutation)
        if rejected is not None:
            return rejected

        context = OptimisticMutationContext(mutation, self.cache.snapshot(mutation.keys))
        self.cache.begin_write(mutation.keys)
        try:
            mutation.apply(self.cache)
            LOGGER.debug(
                "mutation.applied",
                extra={
                    "event": "mutation.applied",
                    "kind": mutation.kind.value,
                    "chat_id": mutation.chat_id,
                },
            )
            try:
                value = await mutation.call()
            except ChatSyncError as exc:
                self._rollback(context, exc)
                result = MutationResult(mutation.kind, mutation.chat_id, ok=False, error=exc)
            else:
                if mutation.settle is not None:
                    mutation.settle(self.cache, value)
                result = MutationResult(mutation.kind, mutation.chat_id, ok=True, value=value)
        except BaseException as exc:
            # Cancellation and programmer errors still leave the cache as it was.
            self._rollback(context, exc)
            raise
        finally:
            self.cache.end_write(mutation.keys)
            self._schedule_refresh(mutation)

        if self.events is not None:
            await self.events.publish(
                MUTATION_SETTLED,
                {
                    "kind": mutation.kind.value,
                    "chat_id": mutation.chat_id,
                    "ok": result.ok,
                    "error_type": result.error_type,
                },
                source="mutations",
            )
        return result

    def check(self, mutation: OptimisticMutation) -> MutationResult | None:
        """Run the validation step alone; a failed result means nothing was touched."""
        if mutation.validate is None:
            return None
        try:
            mutation.validate()
        except ValidationFailure as exc:
            LOGGER.info(
                "mutation.rejected",
                extra={
                    "event": "mutation.rejected",
                    "kind": mutation.kind.value,
                    "chat_id": mutation.chat_id,
                    "reason": str(exc),
                },
            )
            return MutationResult(mutation.kind, mutation.chat_id, ok=False, error=exc)
        return None

    def _rollback(self, context: OptimisticMutationContext, exc: BaseException) -> None:
        self.cache.restore(context.snapshot)
        LOGGER.warning(
            "mutation.rolled_back",
            extra={
                "event": "mutation.rolled_back",
                "kind": context.mutation.kind.value,
                "chat_id": context.mutation.chat_id,
                "error_type": exc.__class__.__name__,
            },
        )

    def _schedule_refresh(self, mutation: OptimisticMutation) -> None:
        if not (self.refresh_after_settle and mutation.refresh_keys):
            return
        if self.refresher is None or self.tasks is None:
            return
        self.tasks.spawn(self.refresher(mutation.refresh_keys))


# Mutation builders. Each returns an ``OptimisticMutation``; none of them
# touches the cache or the network until the executor runs it.


def create_message(
    cache: LocalCache,
    gateway: PersistenceGateway,
    message: Message,
    new_chat: bool = False,
    clock: Clock = now_ms,
) -> OptimisticMutation:
    """Persist ``message``, showing it (and a brand-new chat) immediately.

    The server creates a chat implicitly with its first message, so a new
    chat costs no extra call and a failed first write leaves nothing behind
    to collide with on retry. The server chat (and its derived title) arrives
    with the post-settle list refresh.
    """
    chat_id = message.chat_id
    keys = cache.keys
    pending = message.with_changes(
        pending=True,
        created_at=message.created_at if message.created_at is not None else clock(),
    )

    def validate() -> None:
        if not pending.content.strip() and not pending.attachment_ids:
            raise ValidationFailure("Message content must not be empty.")

    def apply(target: LocalCache) -> None:
        target.update(keys.messages(chat_id), lambda old: append_message(old, pending))
        stamp = pending.created_at or clock()
        chats = target.get(keys.list())
        if new_chat and find_chat(chats, chat_id) is None:
            placeholder = Chat(
                id=chat_id,
                title=None,
                user_id=target.user_id,
                created_at=stamp,
                updated_at=leading_stamp(chats, stamp),
            )
            target.set(keys.list(), upsert_chat(chats, placeholder))
        else:
            target.set(keys.list(), touch_chat(chats, chat_id, stamp))

    async def call() -> Message:
        draft = MessageDraft(
            id=pending.id,
            role=pending.role,
            content=pending.content,
            attachment_ids=pending.attachment_ids,
            model=pending.model,
            created_at=pending.created_at,
        )
        return await gateway.create_message(chat_id, draft)

    def settle(target: LocalCache, confirmed: Message) -> None:
        confirmed = confirmed.with_changes(pending=False)
        target.update(
            keys.messages(chat_id),
            lambda old: settle_message(old, pending.id, confirmed),
        )

    return OptimisticMutation(
        kind=MutationKind.CREATE_MESSAGE,
        chat_id=chat_id,
        keys=(keys.messages(chat_id), keys.list()),
        apply=apply,
        call=call,
        settle=settle,
        validate=validate,
        refresh_keys=(keys.list(), keys.messages(chat_id)),
    )


def create_chat(
    cache: LocalCache,
    gateway: PersistenceGateway,
    chat_id: str,
    title: str | None = None,
    clock: Clock = now_ms,
) -> OptimisticMutation:
    keys = cache.keys

    def apply(target: LocalCache) -> None:
        now = clock()
        placeholder = Chat(
            id=chat_id, title=title, user_id=target.user_id, created_at=now, updated_at=now
        )
        target.update(keys.list(), lambda old: upsert_chat(old, placeholder))
        target.set(keys.messages(chat_id), ())

    def settle(target: LocalCache, chat: Chat) -> None:
        target.update(keys.list(), lambda old: upsert_chat(old, chat))
        target.set(keys.detail(chat_id), chat)

    return OptimisticMutation(
        kind=MutationKind.CREATE_CHAT,
        chat_id=chat_id,
        keys=(keys.list(), keys.detail(chat_id), keys.messages(chat_id)),
        apply=apply,
        call=lambda: gateway.create_chat(chat_id, title),
        settle=settle,
        refresh_keys=(keys.list(),),
    )


def _chat_metadata(
    cache: LocalCache,
    kind: MutationKind,
    chat_id: str,
    changes: Callable[[], dict[str, Any]],
    call: Callable[[], Awaitable[Any]],
    settle: Callable[[LocalCache, Any], None] | None = None,
    validate: Callable[[], None] | None = None,
) -> OptimisticMutation:
    """Shared shape of pin, unpin, archive, unarchive and rename."""
    keys = cache.keys

    def apply(target: LocalCache) -> None:
        values = changes()
        chats = target.get(keys.list())
        current = find_chat(chats, chat_id)
        if current is not None:
            target.set(keys.list(), upsert_chat(chats, current.with_changes(**values)))
        detail = target.get(keys.detail(chat_id))
        if detail is not None:
            target.set(keys.detail(chat_id), detail.with_changes(**values))

    return OptimisticMutation(
        kind=kind,
        chat_id=chat_id,
        keys=(keys.list(), keys.detail(chat_id)),
        apply=apply,
        call=call,
        settle=settle,
        validate=validate,
        refresh_keys=(keys.list(),),
    )


def pin_chat(
    cache: LocalCache, gateway: PersistenceGateway, chat_id: str, clock: Clock = now_ms
) -> OptimisticMutation:
    return _chat_metadata(
        cache,
        MutationKind.PIN,
        chat_id,
        changes=lambda: {"pinned_at": clock()},
        call=lambda: gateway.pin_chat(chat_id),
    )


def unpin_chat(
    cache: LocalCache, gateway: PersistenceGateway, chat_id: str
) -> OptimisticMutation:
    return _chat_metadata(
        cache,
        MutationKind.UNPIN,
        chat_id,
        changes=lambda: {"pinned_at": None},
        call=lambda: gateway.unpin_chat(chat_id),
    )


def archive_chat(
    cache: LocalCache, gateway: PersistenceGateway, chat_id: str, clock: Clock = now_ms
) -> OptimisticMutation:
    return _chat_metadata(
        cache,
        MutationKind.ARCHIVE,
        chat_id,
        changes=lambda: {"archived_at": clock()},
        call=lambda: gateway.archive_chat(chat_id),
    )


def unarchive_chat(
    cache: LocalCache, gateway: PersistenceGateway, chat_id: str
) -> OptimisticMutation:
    return _chat_metadata(
        cache,
        MutationKind.UNARCHIVE,
        chat_id,
        changes=lambda: {"archived_at": None},
        call=lambda: gateway.unarchive_chat(chat_id),
    )


def rename_chat(
    cache: LocalCache,
    gateway: PersistenceGateway,
    chat_id: str,
    title: str,
    clock: Clock = now_ms,
) -> OptimisticMutation:
    keys = cache.keys
    new_title = (title or "").strip()

    def validate() -> None:
        if not new_title:
            raise ValidationFailure("Chat title must not be empty.")

    def settle(target: LocalCache, chat: Chat) -> None:
        target.update(keys.list(), lambda old: upsert_chat(old, chat))
        if target.get(keys.detail(chat_id)) is not None:
            target.set(keys.detail(chat_id), chat)

    return _chat_metadata(
        cache,
        MutationKind.RENAME,
        chat_id,
        changes=lambda: {"title": new_title, "updated_at": clock()},
        call=lambda: gateway.update_chat(chat_id, title=new_title),
        settle=settle,
        validate=validate,
    )


def delete_chat(
    cache: LocalCache, gateway: PersistenceGateway, chat_id: str
) -> OptimisticMutation:
    """Soft-delete a chat: it leaves every view at once."""
    keys = cache.keys

    def apply(target: LocalCache) -> None:
        target.update(keys.list(), lambda old: without_chat(old, chat_id))
        target.remove(keys.messages(chat_id))
        target.remove(keys.detail(chat_id))

    return OptimisticMutation(
        kind=MutationKind.DELETE,
        chat_id=chat_id,
        keys=(keys.list(), keys.detail(chat_id), keys.messages(chat_id)),
        apply=apply,
        call=lambda: gateway.delete_chat(chat_id),
        refresh_keys=(keys.list(),),
    )


def delete_message(
    cache: LocalCache, gateway: PersistenceGateway, chat_id: str, message_id: str
) -> OptimisticMutation:
    keys = cache.keys

    def apply(target: LocalCache) -> None:
        target.update(keys.messages(chat_id), lambda old: without_message(old, message_id))

    return OptimisticMutation(
        kind=MutationKind.DELETE_MESSAGE,
        chat_id=chat_id,
        keys=(keys.messages(chat_id),),
        apply=apply,
        call=lambda: gateway.delete_message(chat_id, message_id),
        refresh_keys=(keys.messages(chat_id),),
    )
