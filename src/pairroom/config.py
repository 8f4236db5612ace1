"""Runtime configuration for PairRoom."""

from __future__ import annotations

import string

from pydantic import BaseModel, Field, field_validator

from pairroom.models.enums import CreatorLeavePolicy, JoinerLeavePolicy

DEFAULT_ALPHABET = string.ascii_uppercase + string.digits

DEFAULT_ICE_SERVERS: list[dict[str, str]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
    {"urls": "stun:stun2.l.google.com:19302"},
]


class PairRoomConfig(BaseModel):
    """Tunables for codes, room lifetime, sync cadence and call timing.

    Attributes:
        code_length: Fixed invite code length.
        code_alphabet: Characters an invite code is drawn from.
        max_code_attempts: Fresh codes tried before room creation gives up.
        room_ttl_seconds: Age after which a room is swept to ``expired``.
        poll_interval: Seconds between polls when push is unavailable.
        push_stall_timeout: Push silence (no event, no heartbeat) tolerated
            before falling back to polling.
        reorder_window: Seconds an out-of-order message waits for the gap
            before it is flushed.
        history_limit: Messages fetched by the initial history load.
        max_poll_failures: Consecutive failed polls before the connection is
            reported lost.
        poll_recovery_timeout: Seconds before a failed poller probes again.
        join_timeout: Upper bound for the join handshake.
        media_timeout: Upper bound for camera/mic/screen acquisition.
        call_timeout: Upper bound for a negotiation to reach ``active``; also
            the age after which an unanswered offer is considered stale.
        max_attachment_bytes: Largest file or voice attachment accepted.
        creator_leave_policy: Room fate when the creator leaves.
        joiner_leave_policy: Joiner slot fate when the joiner leaves.
        ice_servers: STUN/TURN servers handed to peer connections.
    """

    code_length: int = Field(default=6, ge=4, le=32)
    code_alphabet: str = DEFAULT_ALPHABET
    max_code_attempts: int = Field(default=10, ge=1)
    room_ttl_seconds: float = Field(default=24 * 3600, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    push_stall_timeout: float = Field(default=15.0, gt=0)
    reorder_window: float = Field(default=0.5, ge=0)
    history_limit: int = Field(default=100, ge=1)
    max_poll_failures: int = Field(default=3, ge=1)
    poll_recovery_timeout: float = Field(default=5.0, gt=0)
    join_timeout: float = Field(default=15.0, gt=0)
    media_timeout: float = Field(default=20.0, gt=0)
    call_timeout: float = Field(default=30.0, gt=0)
    max_attachment_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    creator_leave_policy: CreatorLeavePolicy = CreatorLeavePolicy.DEACTIVATE
    joiner_leave_policy: JoinerLeavePolicy = JoinerLeavePolicy.CLOSE
    ice_servers: list[dict[str, str]] = Field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    @field_validator("code_alphabet")
    @classmethod
    def _validate_alphabet(cls, v: str) -> str:
        v = v.upper()
        if len(set(v)) != len(v):
            raise ValueError("code_alphabet must not repeat characters")
        if not v.isalnum():
            raise ValueError("code_alphabet must be alphanumeric")
        return v
