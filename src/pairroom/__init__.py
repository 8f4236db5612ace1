"""PairRoom - code-gated two-party chat and calls on pure asyncio."""

from pairroom._version import __version__
from pairroom.backend.base import (
    BackendAction,
    BackendEvent,
    BackendService,
    BlobInfo,
    messages_topic,
    room_topic,
)
from pairroom.backend.memory import InMemoryBackend
from pairroom.config import DEFAULT_ALPHABET, DEFAULT_ICE_SERVERS, PairRoomConfig
from pairroom.core.circuit_breaker import CircuitBreaker
from pairroom.core.codes import CodeGenerator, DegradedRandomnessWarning
from pairroom.core.errors import (
    AttachmentTooLargeError,
    BackendUnavailableError,
    CallStateError,
    DuplicateCodeError,
    EmptyMessageError,
    InvalidCodeShapeError,
    MediaAccessDeniedError,
    NotInRoomError,
    PairRoomError,
    PairRoomTimeoutError,
    PushUnavailableError,
    RoomFullError,
    RoomNotFoundError,
    SignalingError,
)
from pairroom.core.locks import InMemoryLockManager, RoomLockManager
from pairroom.core.registry import CodeCheck, CodeShape, RoomRegistry, normalize_code
from pairroom.core.session import PairRoom, SessionEventHandler
from pairroom.core.signaling import CallSignaling
from pairroom.core.sync import SyncEngine, SyncSubscription
from pairroom.media.base import MediaSource, MediaStream, MediaTrack
from pairroom.media.mock import MockMediaSource, MockMediaTrack
from pairroom.media.peer import (
    MockPeerConnection,
    PeerConnection,
    PeerConnectionFactory,
    SessionDescription,
)
from pairroom.models.call import CallSession
from pairroom.models.enums import (
    CallDirection,
    CallKind,
    CallState,
    CreatorLeavePolicy,
    JoinerLeavePolicy,
    MessageType,
    ParticipantRole,
    PresenceEventType,
    RoomStatus,
    SignalType,
    SyncMode,
    SystemCode,
    TrackKind,
)
from pairroom.models.message import (
    FileMetadata,
    Message,
    MessageMetadata,
    SignalMetadata,
    SystemMetadata,
    VoiceMetadata,
)
from pairroom.models.participant import ParticipantPresence, PresenceEvent
from pairroom.models.room import Room
from pairroom.models.session_event import SessionEvent
from pairroom.telemetry import (
    ConsoleTelemetryProvider,
    MockTelemetryProvider,
    NoopTelemetryProvider,
    TelemetryConfig,
    TelemetryProvider,
)

__all__ = [
    "__version__",
    # Session
    "PairRoom",
    "SessionEvent",
    "SessionEventHandler",
    # Components
    "CallSignaling",
    "CircuitBreaker",
    "CodeCheck",
    "CodeGenerator",
    "CodeShape",
    "DegradedRandomnessWarning",
    "InMemoryLockManager",
    "RoomLockManager",
    "RoomRegistry",
    "SyncEngine",
    "SyncSubscription",
    "normalize_code",
    # Config
    "DEFAULT_ALPHABET",
    "DEFAULT_ICE_SERVERS",
    "PairRoomConfig",
    # Backend
    "BackendAction",
    "BackendEvent",
    "BackendService",
    "BlobInfo",
    "InMemoryBackend",
    "messages_topic",
    "room_topic",
    # Media
    "MediaSource",
    "MediaStream",
    "MediaTrack",
    "MockMediaSource",
    "MockMediaTrack",
    "MockPeerConnection",
    "PeerConnection",
    "PeerConnectionFactory",
    "SessionDescription",
    # Models
    "CallSession",
    "FileMetadata",
    "Message",
    "MessageMetadata",
    "ParticipantPresence",
    "PresenceEvent",
    "Room",
    "SignalMetadata",
    "SystemMetadata",
    "VoiceMetadata",
    # Enums
    "CallDirection",
    "CallKind",
    "CallState",
    "CreatorLeavePolicy",
    "JoinerLeavePolicy",
    "MessageType",
    "ParticipantRole",
    "PresenceEventType",
    "RoomStatus",
    "SignalType",
    "SyncMode",
    "SystemCode",
    "TrackKind",
    # Errors
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
    # Telemetry
    "ConsoleTelemetryProvider",
    "MockTelemetryProvider",
    "NoopTelemetryProvider",
    "TelemetryConfig",
    "TelemetryProvider",
]
