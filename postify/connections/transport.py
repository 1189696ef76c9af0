"""
Transport capability contract.

A transport opens a live session for one credential and hands back a
:class:`Connection`. Failures leave this boundary as :class:`TransportError`
carrying a :class:`FailureKind`, classified exactly once here so callers
never inspect error messages.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from postify.models import MediaType


class FailureKind(Enum):
    """Classification of a transport failure.

    CONFLICT      another consumer is polling with the same credential
    AUTH_REVOKED  the credential was rejected outright
    UNKNOWN       anything else (network, endpoint hiccup)
    """

    CONFLICT = "conflict"
    AUTH_REVOKED = "auth_revoked"
    UNKNOWN = "unknown"


class TransportError(Exception):
    """Structured failure raised by a transport or a live connection.

    Attributes:
        kind: The single classification of this failure.
        cause: The underlying library exception, if any.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        cause: Optional[BaseException] = None,
    ):
        self.kind = kind
        self.cause = cause
        super().__init__(message)


@dataclass
class SentMessage:
    """Identity of a message delivered to a channel."""

    message_id: int
    chat_id: int
    sent_at: datetime


# Inbound update handler: receives the library's update object.
UpdateHandler = Callable[[Any], Awaitable[None]]

# Runtime error callback: receives the classified error of a live connection.
ErrorHandler = Callable[[TransportError], Awaitable[None]]


class Connection(ABC):
    """A live session for one tenant credential."""

    username: Optional[str] = None

    @abstractmethod
    def is_healthy(self) -> bool:
        """Whether the session is still receiving updates."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Close the session. Safe to call more than once."""
        pass

    @abstractmethod
    async def publish(
        self,
        chat_id: int,
        text: str,
        media_type: MediaType = MediaType.TEXT,
        media_file_id: Optional[str] = None,
    ) -> SentMessage:
        """Send a post to a channel.

        Raises:
            TransportError: On any send failure.
        """
        pass


class Transport(ABC):
    """Factory for live connections."""

    @abstractmethod
    async def open(
        self,
        token: str,
        owner_id: int,
        on_update: Optional[UpdateHandler] = None,
        on_error: Optional[ErrorHandler] = None,
    ) -> Connection:
        """Open and confirm a session for *token*.

        Returns only once the session is confirmed live. ``on_update``
        receives inbound updates from *owner_id* only.

        Raises:
            TransportError: If the session could not be confirmed.
        """
        pass


__all__ = [
    "FailureKind",
    "TransportError",
    "SentMessage",
    "UpdateHandler",
    "ErrorHandler",
    "Connection",
    "Transport",
]
