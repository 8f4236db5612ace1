"""Call session model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pairroom.models.enums import CallDirection, CallKind, CallState, TrackKind


def _utcnow() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


@dataclass
class CallSession:
    """State of one call attempt.

    Owned exclusively by :class:`~pairroom.core.signaling.CallSignaling`;
    discarded on hang-up or when the room is left.
    """

    kind: CallKind
    direction: CallDirection
    call_id: str = field(default_factory=lambda: uuid4().hex)
    peer_id: str | None = None
    state: CallState = CallState.NEGOTIATING
    local_track_kinds: set[TrackKind] = field(default_factory=set)
    remote_track_kinds: set[TrackKind] = field(default_factory=set)
    pending_ice_candidates: list[dict[str, Any]] = field(default_factory=list)
    remote_description_set: bool = False
    screen_sharing: bool = False
    remote_screen_sharing: bool = False
    muted: bool = False
    camera_enabled: bool = True
    started_at: datetime = field(default_factory=_utcnow)
    connected_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None
    failure: Exception | None = None

    @property
    def media_path_ready(self) -> bool:
        """True once local tracks are sent and a remote track arrived."""
        return bool(self.local_track_kinds) and bool(self.remote_track_kinds)
