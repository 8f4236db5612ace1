"""Participant presence model."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field

from pairroom.models.enums import ParticipantRole, PresenceEventType


class ParticipantPresence(BaseModel):
    """A room member as seen through the event stream."""

    user_id: str
    role: ParticipantRole
    display_name: str | None = None
    joined_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    online: bool = True


class PresenceEvent(BaseModel):
    """A presence transition derived by the sync engine."""

    type: PresenceEventType
    room_code: str
    participant: ParticipantPresence | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
