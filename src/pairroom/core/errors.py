"""Exception hierarchy for PairRoom.

Every error carries two texts: ``str(exc)`` is the diagnostic message meant
for logs, ``user_message`` is a short actionable sentence a UI can show.
"""

from __future__ import annotations

__all__ = [
    "AttachmentTooLargeError",
    "BackendUnavailableError",
    "CallStateError",
    "DuplicateCodeError",
    "EmptyMessageError",
    "InvalidCodeShapeError",
    "MediaAccessDeniedError",
    "NotInRoomError",
    "PairRoomError",
    "PairRoomTimeoutError",
    "PushUnavailableError",
    "RoomFullError",
    "RoomNotFoundError",
    "SignalingError",
]


class PairRoomError(Exception):
    """Base exception for all PairRoom errors."""

    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str = "", *, user_message: str | None = None) -> None:
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message


class InvalidCodeShapeError(PairRoomError):
    """Invite code failed local length/format validation."""

    default_user_message = "Please enter a valid invite code."


class RoomNotFoundError(PairRoomError):
    """No open or full room matches the code."""

    default_user_message = "Room code not found. Please check the code and try again."


class RoomFullError(PairRoomError):
    """The joiner slot is already taken by someone else."""

    default_user_message = "This room is already full. Please get a new invite code."


class DuplicateCodeError(PairRoomError):
    """The code already denotes an active room."""

    default_user_message = "Could not create a room right now. Please try again."


class MediaAccessDeniedError(PairRoomError):
    """Camera, microphone or screen capture was refused or unavailable."""

    default_user_message = "Camera or microphone access was denied."


class SignalingError(PairRoomError):
    """A signaling payload was malformed or arrived out of order."""

    default_user_message = "The call could not be connected."


class PairRoomTimeoutError(PairRoomError):
    """An operation did not complete within its bounded window."""

    default_user_message = "The operation timed out. Please check your connection."


class BackendUnavailableError(PairRoomError):
    """The backend store or its push channel cannot be reached."""

    default_user_message = "Connection to the server was lost."


class PushUnavailableError(BackendUnavailableError):
    """The backend offers no push channel; polling must be used."""


class NotInRoomError(PairRoomError):
    """A room command was issued without a current room."""

    default_user_message = "Join or create a room first."


class CallStateError(PairRoomError):
    """A call command is not valid in the current call state."""

    default_user_message = "That action is not available right now."


class AttachmentTooLargeError(PairRoomError):
    """An attachment exceeds the configured size limit."""

    default_user_message = "The file is too large to send."


class EmptyMessageError(PairRoomError):
    """A text message had no content after trimming whitespace."""

    default_user_message = "Type a message before sending."
