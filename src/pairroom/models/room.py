"""Room model."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from pairroom.models.enums import ParticipantRole, RoomStatus


class Room(BaseModel):
    """A two-party room keyed by its invite code."""

    id: str
    code: str
    creator_id: str
    joiner_id: str | None = None
    status: RoomStatus = RoomStatus.OPEN
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    closed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def _check_slots(self) -> Room:
        if self.status == RoomStatus.OPEN and self.joiner_id is not None:
            raise ValueError("an open room cannot have a joiner")
        if self.status == RoomStatus.FULL and self.joiner_id is None:
            raise ValueError("a full room must have a joiner")
        return self

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def is_expired(self, now: datetime, ttl_seconds: float) -> bool:
        return self.created_at + timedelta(seconds=ttl_seconds) < now

    def role_of(self, user_id: str) -> ParticipantRole | None:
        """Return the role *user_id* holds in this room, if any."""
        if user_id == self.creator_id:
            return ParticipantRole.CREATOR
        if self.joiner_id is not None and user_id == self.joiner_id:
            return ParticipantRole.JOINER
        return None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Room:
        """Build a Room from an untyped backend record."""
        created_at = record.get("created_at")
        data: dict[str, Any] = {
            "id": str(record["id"]),
            "code": record["code"],
            "creator_id": record["creator_id"],
            "joiner_id": record.get("joiner_id") or None,
            "status": RoomStatus(record.get("status", RoomStatus.OPEN)),
            "closed_at": record.get("closed_at"),
            "metadata": record.get("metadata") or {},
        }
        if created_at is not None:
            data["created_at"] = created_at
        return cls.model_validate(data)
