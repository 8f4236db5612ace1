"""PairRoom - the session controller tying registry, sync and signaling together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any
from uuid import uuid4

from pairroom.backend.base import BackendService
from pairroom.backend.memory import InMemoryBackend
from pairroom.config import PairRoomConfig
from pairroom.core.codes import CodeGenerator
from pairroom.core.errors import (
    AttachmentTooLargeError,
    CallStateError,
    EmptyMessageError,
    NotInRoomError,
    PairRoomError,
    PairRoomTimeoutError,
    RoomFullError,
)
from pairroom.core.locks import RoomLockManager
from pairroom.core.registry import CodeCheck, RoomRegistry, StepCallback
from pairroom.core.signaling import CallSignaling
from pairroom.core.sync import SyncEngine, SyncSubscription
from pairroom.media.base import MediaSource
from pairroom.media.mock import MockMediaSource
from pairroom.media.peer import MockPeerConnection, PeerConnectionFactory
from pairroom.models.call import CallSession
from pairroom.models.enums import (
    CallKind,
    CallState,
    MessageType,
    ParticipantRole,
    PresenceEventType,
    RoomStatus,
    SyncMode,
    SystemCode,
)
from pairroom.models.message import (
    FileMetadata,
    Message,
    SignalMetadata,
    SystemMetadata,
    VoiceMetadata,
)
from pairroom.models.participant import PresenceEvent
from pairroom.models.room import Room
from pairroom.models.session_event import SessionEvent
from pairroom.telemetry.base import TelemetryProvider
from pairroom.telemetry.config import TelemetryConfig, resolve_provider

logger = logging.getLogger("pairroom.session")

__all__ = ["PairRoom", "SessionEventHandler"]

SessionEventHandler = Callable[[SessionEvent], Coroutine[Any, Any, None]]


class PairRoom:
    """Central orchestrator for one participant of a two-party room.

    Commands (``create_room``, ``join_room``, ``send_message``,
    ``start_call`` ...) are coroutines that raise typed
    :class:`~pairroom.core.errors.PairRoomError` subclasses. Everything the
    presentation layer needs to render arrives as :class:`SessionEvent`
    objects delivered to handlers registered with :meth:`on`.

    Example::

        kit = PairRoom(backend)

        @kit.on("message_received")
        async def show(event: SessionEvent) -> None:
            print(event.data["message"].content)

        room = await kit.create_room()
        print("Share this code:", room.code)
    """

    def __init__(
        self,
        backend: BackendService | None = None,
        *,
        config: PairRoomConfig | None = None,
        user_id: str | None = None,
        display_name: str | None = None,
        media_source: MediaSource | None = None,
        peer_factory: PeerConnectionFactory | None = None,
        code_generator: CodeGenerator | None = None,
        lock_manager: RoomLockManager | None = None,
        telemetry: TelemetryConfig | TelemetryProvider | None = None,
    ) -> None:
        """Initialise the session controller.

        Args:
            backend: Document store, push and blob service. Defaults to
                ``InMemoryBackend``.
            config: Tunables. Defaults to ``PairRoomConfig()``.
            user_id: Identity of this participant. A random anonymous id is
                generated when omitted.
            display_name: Optional human-readable name.
            media_source: Camera/microphone/screen access. Defaults to
                ``MockMediaSource``.
            peer_factory: Builds a peer connection from the ICE server list.
                Defaults to ``MockPeerConnection``.
            code_generator: Invite code generator. Defaults to one built from
                the config.
            lock_manager: Per-room lock manager for the join handshake.
            telemetry: Telemetry config or provider. Defaults to no-op.
        """
        self._backend = backend or InMemoryBackend()
        self._config = config or PairRoomConfig()
        self._user_id = user_id or f"anon-{uuid4().hex[:12]}"
        self._display_name = display_name
        self._media = media_source or MockMediaSource()
        self._peer_factory: PeerConnectionFactory = peer_factory or MockPeerConnection
        self._telemetry = resolve_provider(telemetry)
        self._registry = RoomRegistry(
            self._backend,
            self._config,
            code_generator=code_generator,
            lock_manager=lock_manager,
            telemetry=self._telemetry,
        )
        self._sync = SyncEngine(self._backend, self._config, telemetry=self._telemetry)
        self._event_handlers: list[tuple[str, SessionEventHandler]] = []

        self._room: Room | None = None
        self._role: ParticipantRole | None = None
        self._subscription: SyncSubscription | None = None
        self._signaling: CallSignaling | None = None
        self._peer_id: str | None = None

    # -- Properties --

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def display_name(self) -> str | None:
        return self._display_name

    @property
    def backend(self) -> BackendService:
        return self._backend

    @property
    def config(self) -> PairRoomConfig:
        return self._config

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def sync(self) -> SyncEngine:
        return self._sync

    @property
    def room(self) -> Room | None:
        """The room this session is in, or ``None``."""
        return self._room

    @property
    def role(self) -> ParticipantRole | None:
        return self._role

    @property
    def peer_id(self) -> str | None:
        """Identity of the other participant, once known."""
        return self._peer_id

    @property
    def call(self) -> CallSession | None:
        return self._signaling.call if self._signaling is not None else None

    @property
    def call_state(self) -> CallState:
        return self._signaling.state if self._signaling is not None else CallState.IDLE

    @property
    def signaling(self) -> CallSignaling | None:
        return self._signaling

    @property
    def sync_mode(self) -> SyncMode:
        if self._room is None:
            return SyncMode.CLOSED
        return self._sync.mode(self._room.code)

    # -- Event handlers --

    def on(self, event_type: str) -> Callable[..., Any]:
        """Decorator to register a session event handler filtered by type."""

        def decorator(fn: SessionEventHandler) -> SessionEventHandler:
            self._event_handlers.append((event_type, fn))
            return fn

        return decorator

    async def _emit(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Emit a session event to handlers registered for *event_type*."""
        event = SessionEvent(
            type=event_type,
            room_code=self._room.code if self._room is not None else None,
            data=data or {},
        )
        for filter_type, handler in self._event_handlers:
            if filter_type == event.type:
                try:
                    await handler(event)
                except Exception:
                    logger.exception(
                        "Session event handler failed",
                        extra={"event_type": event.type, "room_code": event.room_code},
                    )

    async def _emit_error(self, exc: PairRoomError, *, operation: str) -> None:
        await self._emit(
            "error",
            {
                "operation": operation,
                "error": type(exc).__name__,
                "message": exc.user_message,
                "exception": exc,
            },
        )

    # -- Room lifecycle --

    async def create_room(self) -> Room:
        """Create a room with a fresh invite code and enter it as creator."""
        self._require_no_room()
        try:
            room = await self._registry.create_room_with_fresh_code(self._user_id)
        except PairRoomError as exc:
            await self._emit_error(exc, operation="create_room")
            raise
        await self._enter(room, ParticipantRole.CREATOR)
        await self._emit("room_created", {"room": room, "code": room.code})
        return room

    async def join_room(self, code: str) -> Room:
        """Join the room *code* as the second participant.

        Raises:
            InvalidCodeShapeError: The code fails local validation.
            RoomNotFoundError: No active room has this code.
            RoomFullError: Someone else already joined.
            PairRoomTimeoutError: The handshake exceeded ``join_timeout``.
        """
        self._require_no_room()
        try:
            try:
                async with asyncio.timeout(self._config.join_timeout):
                    room = await self._registry.join_room(code, self._user_id)
            except TimeoutError as exc:
                raise PairRoomTimeoutError(
                    f"join of {code!r} exceeded {self._config.join_timeout}s",
                    user_message="Joining the room timed out. Please try again.",
                ) from exc
        except RoomFullError as exc:
            await self._emit("room_full", {"code": code.strip().upper()})
            await self._emit_error(exc, operation="join_room")
            raise
        except PairRoomError as exc:
            await self._emit_error(exc, operation="join_room")
            raise

        role = room.role_of(self._user_id) or ParticipantRole.JOINER
        await self._enter(room, role)
        if role == ParticipantRole.JOINER:
            await self._post_system(SystemCode.PARTICIPANT_JOINED, "joined the room")
        await self._emit("room_joined", {"room": room, "code": room.code, "role": role})
        return room

    async def check_code(self, code: str, on_step: StepCallback | None = None) -> CodeCheck:
        """Validate *code* step by step (length, format, existence, availability)."""
        return await self._registry.check_code(code, user_id=self._user_id, on_step=on_step)

    async def leave_room(self) -> None:
        """Leave the current room, applying the configured departure policy.

        Ends any call, stops the sync stream and releases media before the
        backend is updated. A no-op when not in a room.
        """
        room = self._room
        if room is None:
            return
        if self._signaling is not None:
            await self._signaling.hang_up()
        await self._post_system(SystemCode.PARTICIPANT_LEFT, "left the room")
        self._teardown()
        try:
            await self._registry.leave_room(room.code, self._user_id)
        except PairRoomError as exc:
            logger.warning("Could not update room %s on leave: %s", room.code, exc)
            await self._emit_error(exc, operation="leave_room")
        await self._emit("room_left", {"code": room.code})
        self._room = None
        self._role = None
        self._peer_id = None

    async def sweep_expired_rooms(self, now: datetime | None = None) -> list[Room]:
        """Expire every room older than the configured TTL."""
        return await self._registry.expire_stale_rooms(now)

    async def close(self) -> None:
        """Leave the room and release the backend and telemetry."""
        await self.leave_room()
        self._sync.close()
        await self._backend.close()
        self._telemetry.close()

    async def _enter(self, room: Room, role: ParticipantRole) -> None:
        self._room = room
        self._role = role
        self._peer_id = room.joiner_id if role == ParticipantRole.CREATOR else room.creator_id
        self._signaling = CallSignaling(
            self._user_id,
            self._send_signal,
            self._media,
            self._peer_factory,
            self._config,
            on_state_change=self._on_call_state,
            on_incoming_call=self._on_incoming_call,
            telemetry=self._telemetry,
        )
        self._subscription = await self._sync.subscribe(
            room.code, self._on_message, self._on_presence, self._on_connection
        )
        try:
            await self._sync.load_history(room.code)
        except PairRoomError as exc:
            logger.warning("Could not load history for room %s: %s", room.code, exc)
            await self._emit_error(exc, operation="load_history")
        logger.info("User %s entered room %s as %s", self._user_id, room.code, role)

    def _teardown(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()
        signaling, self._signaling = self._signaling, None
        if signaling is not None:
            signaling.close()

    def _require_room(self) -> Room:
        if self._room is None:
            raise NotInRoomError("No current room")
        return self._room

    def _require_no_room(self) -> None:
        if self._room is not None:
            raise PairRoomError(
                f"Already in room {self._room.code}",
                user_message="Leave the current room first.",
            )

    def _require_signaling(self) -> CallSignaling:
        room = self._require_room()
        if self._signaling is None:
            raise CallStateError(f"Calls are not available in room {room.code}")
        return self._signaling

    # -- Messaging --

    async def send_message(self, text: str) -> Message:
        """Send a text message to the room."""
        room = self._require_room()
        try:
            text = text.strip()
            if not text:
                raise EmptyMessageError("Message text must not be empty")
            record = await self._backend.append_message(
                room.code, self._user_id, MessageType.TEXT, text
            )
        except PairRoomError as exc:
            await self._emit_error(exc, operation="send_message")
            raise
        return Message.from_record(record)

    async def send_file(
        self,
        data: bytes,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> Message:
        """Upload *data* and post it as a file message."""
        room = self._require_room()
        try:
            self._check_attachment(data, filename)
            blob = await self._backend.upload_blob(data, filename, content_type)
            metadata = FileMetadata(
                name=filename, size_bytes=blob.size, content_type=content_type, blob_id=blob.id
            )
            record = await self._backend.append_message(
                room.code,
                self._user_id,
                MessageType.FILE,
                blob.url,
                metadata.model_dump(mode="json"),
            )
        except PairRoomError as exc:
            await self._emit_error(exc, operation="send_file")
            raise
        return Message.from_record(record)

    async def send_voice(
        self,
        data: bytes,
        duration_seconds: float,
        content_type: str = "audio/webm",
    ) -> Message:
        """Upload a voice recording and post it as a voice message."""
        room = self._require_room()
        filename = f"voice-{uuid4().hex[:8]}.webm"
        try:
            self._check_attachment(data, filename)
            blob = await self._backend.upload_blob(data, filename, content_type)
            metadata = VoiceMetadata(
                duration_seconds=duration_seconds,
                content_type=content_type,
                size_bytes=blob.size,
                blob_id=blob.id,
            )
            record = await self._backend.append_message(
                room.code,
                self._user_id,
                MessageType.VOICE,
                blob.url,
                metadata.model_dump(mode="json"),
            )
        except PairRoomError as exc:
            await self._emit_error(exc, operation="send_voice")
            raise
        return Message.from_record(record)

    def _check_attachment(self, data: bytes, filename: str) -> None:
        limit = self._config.max_attachment_bytes
        if len(data) > limit:
            raise AttachmentTooLargeError(
                f"{filename} is {len(data)} bytes, limit is {limit}",
                user_message=f"Files must be smaller than {limit // (1024 * 1024)} MB.",
            )

    async def _post_system(self, code: SystemCode, text: str) -> None:
        room = self._room
        if room is None:
            return
        metadata = SystemMetadata(code=code, user_id=self._user_id)
        try:
            await self._backend.append_message(
                room.code,
                self._user_id,
                MessageType.SYSTEM,
                text,
                metadata.model_dump(mode="json"),
            )
        except PairRoomError as exc:
            logger.warning("Could not post %s to room %s: %s", code, room.code, exc)

    async def _send_signal(self, signal: SignalMetadata) -> None:
        room = self._require_room()
        await self._backend.append_message(
            room.code,
            self._user_id,
            MessageType.SIGNAL,
            "",
            signal.model_dump(mode="json"),
        )

    # -- Calls --

    async def start_call(self, kind: CallKind = CallKind.VIDEO) -> CallSession:
        """Start a video or voice call with the other participant."""
        signaling = self._require_signaling()
        try:
            return await signaling.start_call(kind)
        except PairRoomError as exc:
            await self._emit_error(exc, operation="start_call")
            raise

    async def accept_call(self) -> CallSession:
        signaling = self._require_signaling()
        try:
            return await signaling.accept_call()
        except PairRoomError as exc:
            await self._emit_error(exc, operation="accept_call")
            raise

    async def decline_call(self) -> None:
        await self._require_signaling().decline_call()

    async def hang_up(self) -> None:
        await self._require_signaling().hang_up()

    async def start_screen_share(self) -> None:
        signaling = self._require_signaling()
        try:
            await signaling.start_screen_share()
        except PairRoomError as exc:
            await self._emit_error(exc, operation="start_screen_share")
            raise

    async def stop_screen_share(self) -> None:
        await self._require_signaling().stop_screen_share()

    def toggle_mute(self) -> bool:
        """Returns ``True`` when the microphone is now muted."""
        return self._require_signaling().toggle_mute()

    def toggle_camera(self) -> bool:
        """Returns ``True`` when the camera is now on."""
        return self._require_signaling().toggle_camera()

    # -- Stream callbacks --

    async def _on_message(self, message: Message) -> None:
        if message.type == MessageType.SIGNAL:
            if self._signaling is not None:
                await self._signaling.handle_signal(message)
            return
        await self._emit(
            "message_received",
            {"message": message, "own": message.sender_id == self._user_id},
        )

    async def _on_presence(self, event: PresenceEvent) -> None:
        if event.type == PresenceEventType.ROOM_CLOSED:
            await self._emit("room_closed", {"code": event.room_code})
            return
        participant = event.participant
        if participant is None or participant.user_id == self._user_id:
            return
        data = {"user_id": participant.user_id, "role": participant.role}
        if event.type == PresenceEventType.JOINED:
            self._peer_id = participant.user_id
            room = self._room
            if room is not None and participant.role == ParticipantRole.JOINER:
                self._room = room.model_copy(
                    update={"joiner_id": participant.user_id, "status": RoomStatus.FULL}
                )
            await self._emit("participant_joined", data)
        elif event.type == PresenceEventType.LEFT:
            await self._emit("participant_left", data)

    async def _on_connection(self, error: Exception | None) -> None:
        if error is None:
            await self._emit("connection_restored")
            return
        message = error.user_message if isinstance(error, PairRoomError) else str(error)
        await self._emit("connection_lost", {"error": type(error).__name__, "message": message})

    async def _on_call_state(self, call: CallSession) -> None:
        await self._emit(
            "call_state_changed",
            {"call": call, "state": call.state, "call_id": call.call_id, "failure": call.failure},
        )

    async def _on_incoming_call(self, call: CallSession) -> None:
        await self._emit(
            "incoming_call",
            {"call": call, "call_id": call.call_id, "kind": call.kind, "from": call.peer_id},
        )
