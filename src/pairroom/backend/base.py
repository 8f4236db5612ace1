"""Abstract base class for the backend service (store, push, blobs)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum, unique
from typing import Any

from pydantic import BaseModel, Field

from pairroom.models.enums import MessageType, RoomStatus


@unique
class BackendAction(StrEnum):
    """What happened to the record carried by a push event."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    HEARTBEAT = "heartbeat"


@dataclass(frozen=True)
class BackendEvent:
    """A push notification delivered on a topic."""

    topic: str
    action: BackendAction
    payload: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class BlobInfo(BaseModel):
    """Result of a blob upload."""

    id: str
    url: str
    size: int = Field(ge=0)
    content_type: str


BackendCallback = Callable[[BackendEvent], Coroutine[Any, Any, None]]
ErrorCallback = Callable[[Exception], Coroutine[Any, Any, None]]
Unsubscribe = Callable[[], None]


def room_topic(code: str) -> str:
    """Push topic carrying changes to the room record for *code*."""
    return f"rooms.{code}"


def messages_topic(code: str) -> str:
    """Push topic carrying new messages of the room *code*."""
    return f"messages.{code}"


class BackendService(ABC):
    """Document store, push channel and blob storage behind a room.

    Records cross this boundary as plain dictionaries; the core validates them
    into models (``Room.from_record``, ``Message.from_record``).

    Room records carry ``id``, ``code``, ``creator_id``, ``joiner_id``,
    ``status``, ``created_at`` and ``closed_at``. Message records carry
    ``id`` (int, assigned by the service, increasing within a room),
    ``room_code``, ``sender_id``, ``type``, ``content``, ``timestamp`` and
    ``metadata``.

    Implementations raise :class:`~pairroom.core.errors.BackendUnavailableError`
    for connectivity failures.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def contiguous_ids(self) -> bool:
        """True if message ids within a room have no gaps (1, 2, 3, ...)."""
        return False

    @property
    def heartbeat_interval(self) -> float | None:
        """Seconds of push silence after which the backend sends a keep-alive.

        ``None`` when the push channel has no keep-alive of its own.
        """
        return None

    # Room records

    @abstractmethod
    async def create_room_record(self, code: str, creator_id: str) -> dict[str, Any]:
        """Create an open room. Raises ``DuplicateCodeError`` if *code* is active."""
        ...

    @abstractmethod
    async def find_room_record(self, code: str) -> dict[str, Any] | None:
        """Return the active (open or full) room for *code*, or ``None``."""
        ...

    @abstractmethod
    async def update_joiner_slot(self, room_id: str, joiner_id: str) -> dict[str, Any]:
        """Claim the joiner slot if, and only if, it is empty.

        Must be atomic: of two concurrent claims exactly one succeeds, the
        other raises ``RoomFullError``. Re-claiming with the identity that
        already holds the slot succeeds without change.
        """
        ...

    @abstractmethod
    async def clear_joiner_slot(self, room_id: str) -> dict[str, Any]:
        """Empty the joiner slot and return the room to ``open``."""
        ...

    @abstractmethod
    async def update_room_status(self, room_id: str, status: RoomStatus) -> dict[str, Any]:
        """Set the room status (``closed``/``expired``)."""
        ...

    @abstractmethod
    async def delete_room_record(self, room_id: str) -> bool:
        """Delete a room and its messages. Returns ``True`` if it existed."""
        ...

    @abstractmethod
    async def list_room_records(
        self, statuses: set[RoomStatus] | None = None
    ) -> list[dict[str, Any]]:
        """List room records, optionally filtered by status."""
        ...

    # Messages

    @abstractmethod
    async def append_message(
        self,
        room_code: str,
        sender_id: str,
        type: MessageType,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Append a message; the service assigns ``id`` and ``timestamp``."""
        ...

    @abstractmethod
    async def list_messages(
        self, room_code: str, since_id: int | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Messages of a room ordered by id, optionally after *since_id*."""
        ...

    # Push

    @abstractmethod
    async def subscribe(
        self,
        topic: str,
        callback: BackendCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        """Subscribe to push events on *topic*.

        Returns a synchronous callable that releases the subscription; after
        it returns no further callbacks fire. Raises ``PushUnavailableError``
        when the service has no push channel.
        """
        ...

    # Blobs

    @abstractmethod
    async def upload_blob(self, data: bytes, filename: str, content_type: str) -> BlobInfo:
        """Store *data* and return its id and URL."""
        ...

    @abstractmethod
    async def get_blob_url(self, blob_id: str) -> str:
        """Return a URL from which the blob can be downloaded."""
        ...

    async def close(self) -> None:
        """Release connections.

        Override this method in subclasses that need cleanup.
        """
        return None
