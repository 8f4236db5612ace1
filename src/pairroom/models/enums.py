"""All string enums for PairRoom."""

from __future__ import annotations

from enum import StrEnum, unique


@unique
class RoomStatus(StrEnum):
    OPEN = "open"
    FULL = "full"
    EXPIRED = "expired"
    CLOSED = "closed"

    @property
    def is_active(self) -> bool:
        return self in (RoomStatus.OPEN, RoomStatus.FULL)


@unique
class ParticipantRole(StrEnum):
    CREATOR = "creator"
    JOINER = "joiner"


@unique
class MessageType(StrEnum):
    TEXT = "text"
    VOICE = "voice"
    FILE = "file"
    SYSTEM = "system"
    SIGNAL = "signal"


@unique
class SignalType(StrEnum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CALL_END = "call-end"
    TRACK_REPLACE = "track-replace"


@unique
class SystemCode(StrEnum):
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    ROOM_CLOSED = "room_closed"


@unique
class CallKind(StrEnum):
    VIDEO = "video"
    VOICE = "voice"


@unique
class CallDirection(StrEnum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


@unique
class CallState(StrEnum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    ENDED = "ended"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (CallState.ENDED, CallState.FAILED)


@unique
class TrackKind(StrEnum):
    AUDIO = "audio"
    VIDEO = "video"


@unique
class SyncMode(StrEnum):
    CONNECTING = "connecting"
    PUSH = "push"
    POLLING = "polling"
    CLOSED = "closed"


@unique
class PresenceEventType(StrEnum):
    JOINED = "joined"
    LEFT = "left"
    ROOM_CLOSED = "room_closed"


@unique
class CreatorLeavePolicy(StrEnum):
    """What happens to the room when its creator leaves."""

    DELETE = "delete"
    DEACTIVATE = "deactivate"


@unique
class JoinerLeavePolicy(StrEnum):
    """What happens to the joiner slot when the joiner leaves."""

    CLOSE = "close"
    REOPEN = "reopen"
