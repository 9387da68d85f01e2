"""Manager classes that drive the cache on behalf of the controller.

Available managers:
- ConversationManager: Chat list loading, ordering and metadata mutations
- StreamManager: Completion streaming, reply persistence and interruption
"""

from __future__ import annotations

from .conversation import ConversationManager
from .stream import StreamManager

__all__ = [
    "ConversationManager",
    "StreamManager",
]
