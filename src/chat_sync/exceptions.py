"""Domain exception hierarchy for the conversation synchronization layer."""

from __future__ import annotations


class ChatSyncError(RuntimeError):
    """Base class for all domain-level synchronization errors."""


class NetworkFailure(ChatSyncError):
    """Raised when the persistence gateway or transport cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationFailure(ChatSyncError):
    """Raised when a write is rejected before any optimistic apply."""


class ConflictFailure(ChatSyncError):
    """Raised when the target chat or message no longer exists server-side."""


class PartialStreamFailure(ChatSyncError):
    """Raised when a completion channel drops after fragments were received."""


class ConfigValidationError(ChatSyncError):
    """Raised when configuration cannot be validated safely."""
