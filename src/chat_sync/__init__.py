"""Client-side conversation synchronization for a self-hosted chat server."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .cache import ChatKeys, LocalCache
    from .chat import ChatController
    from .config import SyncSettings, ensure_config_dir, load_config
    from .exceptions import (
        ChatSyncError,
        ConfigValidationError,
        ConflictFailure,
        NetworkFailure,
        PartialStreamFailure,
        ValidationFailure,
    )
    from .gateway import (
        HttpPersistenceGateway,
        InMemoryPersistenceGateway,
        PersistenceGateway,
    )
    from .models import Chat, Message, Role
    from .mutations import MutationResult
    from .reconciler import MessageReconciler
    from .state import StreamStatus
    from .transport import HttpStreamingTransport, StreamingTransport

__all__ = [
    "Chat",
    "ChatController",
    "ChatKeys",
    "ChatSyncError",
    "ConfigValidationError",
    "ConflictFailure",
    "HttpPersistenceGateway",
    "HttpStreamingTransport",
    "InMemoryPersistenceGateway",
    "LocalCache",
    "Message",
    "MessageReconciler",
    "MutationResult",
    "NetworkFailure",
    "PartialStreamFailure",
    "PersistenceGateway",
    "Role",
    "StreamStatus",
    "StreamingTransport",
    "SyncSettings",
    "ValidationFailure",
    "ensure_config_dir",
    "load_config",
]

_EXPORTS: dict[str, str] = {
    "Chat": "models",
    "Message": "models",
    "Role": "models",
    "ChatController": "chat",
    "ChatKeys": "cache",
    "LocalCache": "cache",
    "SyncSettings": "config",
    "ensure_config_dir": "config",
    "load_config": "config",
    "ChatSyncError": "exceptions",
    "ConfigValidationError": "exceptions",
    "ConflictFailure": "exceptions",
    "NetworkFailure": "exceptions",
    "PartialStreamFailure": "exceptions",
    "ValidationFailure": "exceptions",
    "HttpPersistenceGateway": "gateway",
    "InMemoryPersistenceGateway": "gateway",
    "PersistenceGateway": "gateway",
    "MutationResult": "mutations",
    "MessageReconciler": "reconciler",
    "StreamStatus": "state",
    "HttpStreamingTransport": "transport",
    "StreamingTransport": "transport",
}


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import chat_sync`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)
