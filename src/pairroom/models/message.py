"""Message and metadata models."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pairroom.models.enums import CallKind, MessageType, SignalType, SystemCode


class FileMetadata(BaseModel):
    """Attachment details for a file message."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["file"] = "file"
    name: str
    size_bytes: int = Field(ge=0)
    content_type: str = "application/octet-stream"
    blob_id: str | None = None


class VoiceMetadata(BaseModel):
    """Recording details for a voice message."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["voice"] = "voice"
    duration_seconds: float = Field(ge=0.0)
    content_type: str = "audio/webm"
    size_bytes: int | None = Field(default=None, ge=0)
    blob_id: str | None = None


class SystemMetadata(BaseModel):
    """Machine-readable part of a system message."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["system"] = "system"
    code: SystemCode
    user_id: str | None = None


class SignalMetadata(BaseModel):
    """Call signaling envelope carried by a signal message."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["signal"] = "signal"
    signal_type: SignalType
    call_id: str
    call_kind: CallKind | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


MessageMetadata = Annotated[
    FileMetadata | VoiceMetadata | SystemMetadata | SignalMetadata,
    Field(discriminator="kind"),
]

_EXPECTED_KIND: dict[MessageType, str | None] = {
    MessageType.TEXT: None,
    MessageType.FILE: "file",
    MessageType.VOICE: "voice",
    MessageType.SYSTEM: "system",
    MessageType.SIGNAL: "signal",
}


class Message(BaseModel):
    """A single immutable entry in a room's message log."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=1)
    room_code: str
    sender_id: str
    type: MessageType = MessageType.TEXT
    content: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: MessageMetadata | None = None

    @model_validator(mode="after")
    def _check_metadata_kind(self) -> Message:
        expected = _EXPECTED_KIND[self.type]
        actual = self.metadata.kind if self.metadata is not None else None
        if expected is None and actual is not None:
            raise ValueError(f"{self.type} messages carry no metadata, got {actual!r}")
        if expected is not None and actual != expected:
            raise ValueError(f"{self.type} messages require {expected!r} metadata")
        return self

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.id)

    @property
    def signal(self) -> SignalMetadata | None:
        if isinstance(self.metadata, SignalMetadata):
            return self.metadata
        return None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Message:
        """Validate an untyped backend record into a Message.

        Raises ``pydantic.ValidationError`` when the record does not match one
        of the known message shapes.
        """
        return cls.model_validate(
            {
                "id": record["id"],
                "room_code": record["room_code"],
                "sender_id": record["sender_id"],
                "type": record.get("type", MessageType.TEXT),
                "content": record.get("content") or "",
                "timestamp": record["timestamp"],
                "metadata": record.get("metadata") or None,
            }
        )

    def to_record(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return self.model_dump(mode="json")
