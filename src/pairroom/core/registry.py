"""Room registry: invite-code rooms and the two-party join handshake."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from pairroom.backend.base import BackendService
from pairroom.config import PairRoomConfig
from pairroom.core.codes import CodeGenerator
from pairroom.core.errors import (
    DuplicateCodeError,
    InvalidCodeShapeError,
    NotInRoomError,
    PairRoomError,
    RoomFullError,
    RoomNotFoundError,
)
from pairroom.core.locks import InMemoryLockManager, RoomLockManager
from pairroom.models.enums import (
    CreatorLeavePolicy,
    JoinerLeavePolicy,
    ParticipantRole,
    RoomStatus,
)
from pairroom.models.room import Room
from pairroom.telemetry.base import Attr, SpanKind, TelemetryProvider
from pairroom.telemetry.config import TelemetryConfig, resolve_provider

logger = logging.getLogger("pairroom.registry")

__all__ = ["CodeCheck", "CodeShape", "RoomRegistry", "normalize_code"]


def normalize_code(raw: str) -> str:
    """Strip surrounding whitespace and upper-case a user-entered code."""
    return raw.strip().upper()


@dataclass(frozen=True)
class CodeShape:
    """Result of the local (offline) code checks."""

    code: str
    length_ok: bool
    format_ok: bool

    @property
    def valid(self) -> bool:
        return self.length_ok and self.format_ok


@dataclass(frozen=True)
class CodeCheck:
    """Progress of the four-step code validation pipeline.

    Steps run in order (length, format, existence, availability) and each
    one gates the next. A step that has not run yet is ``None``.
    """

    code: str
    length_ok: bool | None = None
    format_ok: bool | None = None
    exists: bool | None = None
    available: bool | None = None
    room: Room | None = None
    error: PairRoomError | None = None

    @property
    def passed(self) -> bool:
        return bool(self.length_ok and self.format_ok and self.exists and self.available)

    @property
    def failed_step(self) -> str | None:
        """Name of the first failing step, or ``None``."""
        for step in ("length_ok", "format_ok", "exists", "available"):
            if getattr(self, step) is False:
                return step
        return None


StepCallback = Callable[[CodeCheck], None]


class RoomRegistry:
    """Creates, finds, joins, expires and closes rooms.

    The joiner-slot check-and-set is serialized per code with a
    :class:`RoomLockManager` and then delegated to the backend's conditional
    ``update_joiner_slot``, so concurrent joins on one code produce exactly
    one winner.
    """

    def __init__(
        self,
        backend: BackendService,
        config: PairRoomConfig | None = None,
        *,
        code_generator: CodeGenerator | None = None,
        lock_manager: RoomLockManager | None = None,
        telemetry: TelemetryConfig | TelemetryProvider | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or PairRoomConfig()
        self._codes = code_generator or CodeGenerator(
            self._config.code_length, self._config.code_alphabet
        )
        self._locks = lock_manager or InMemoryLockManager()
        self._telemetry = resolve_provider(telemetry)

    @property
    def config(self) -> PairRoomConfig:
        return self._config

    @property
    def code_generator(self) -> CodeGenerator:
        return self._codes

    # -- Local validation --

    def validate_code_shape(self, raw: str) -> CodeShape:
        """Check length and alphabet of *raw* without any I/O."""
        code = normalize_code(raw)
        length_ok = len(code) == self._config.code_length
        alphabet = self._config.code_alphabet
        format_ok = bool(code) and all(ch in alphabet for ch in code)
        return CodeShape(code=code, length_ok=length_ok, format_ok=format_ok)

    def _require_shape(self, raw: str) -> str:
        shape = self.validate_code_shape(raw)
        if not shape.length_ok:
            raise InvalidCodeShapeError(
                f"Code {shape.code!r} must be {self._config.code_length} characters",
                user_message=f"Invite codes are {self._config.code_length} characters long.",
            )
        if not shape.format_ok:
            raise InvalidCodeShapeError(
                f"Code {shape.code!r} contains characters outside the alphabet",
                user_message="Invite codes contain only letters and digits.",
            )
        return shape.code

    async def check_code(
        self,
        raw: str,
        *,
        user_id: str | None = None,
        on_step: StepCallback | None = None,
    ) -> CodeCheck:
        """Run the validation pipeline, reporting after every step.

        Availability is judged for *user_id*: a slot already held by that
        identity counts as available, so a rejoin is not refused.
        """
        shape = self.validate_code_shape(raw)
        check = CodeCheck(code=shape.code, length_ok=shape.length_ok)
        _report(on_step, check)
        if not shape.length_ok:
            return check

        check = replace(check, format_ok=shape.format_ok)
        _report(on_step, check)
        if not shape.format_ok:
            return check

        try:
            room = await self.find_room(shape.code)
        except PairRoomError as exc:
            check = replace(check, error=exc)
            _report(on_step, check)
            return check
        check = replace(check, exists=room is not None, room=room)
        _report(on_step, check)
        if room is None:
            return check

        available = room.joiner_id is None or (
            user_id is not None and room.role_of(user_id) is not None
        )
        check = replace(check, available=available)
        _report(on_step, check)
        return check

    # -- Room lifecycle --

    async def create_room(self, code: str, creator_id: str) -> Room:
        """Create an open room for *code*.

        Raises:
            InvalidCodeShapeError: *code* fails local validation.
            DuplicateCodeError: *code* already denotes an open or full room.
        """
        code = self._require_shape(code)
        with self._telemetry.span(
            SpanKind.ROOM_CREATE,
            "registry.create_room",
            room_code=code,
            attributes={Attr.USER_ID: creator_id, Attr.BACKEND_TYPE: self._backend.name},
        ):
            record = await self._backend.create_room_record(code, creator_id)
        room = Room.from_record(record)
        logger.info("Created room %s", room.code, extra={"room_code": room.code})
        return room

    async def create_room_with_fresh_code(self, creator_id: str) -> Room:
        """Generate codes until one is free, up to ``max_code_attempts``."""
        attempts = self._config.max_code_attempts
        for attempt in range(1, attempts + 1):
            code = self._codes.generate(self._config.code_length)
            try:
                room = await self.create_room(code, creator_id)
            except DuplicateCodeError:
                logger.debug("Code %s already active (attempt %d/%d)", code, attempt, attempts)
                continue
            self._telemetry.record_metric(
                "pairroom.room.code_attempts",
                float(attempt),
                attributes={Attr.ROOM_CODE: room.code},
            )
            return room
        raise DuplicateCodeError(f"No unused code found after {attempts} attempts")

    async def find_room(self, code: str) -> Room | None:
        """Return the open or full room for *code*, or ``None``.

        A code with the wrong shape never reaches the backend.
        """
        shape = self.validate_code_shape(code)
        if not shape.valid:
            return None
        record = await self._backend.find_room_record(shape.code)
        if record is None:
            return None
        room = Room.from_record(record)
        return room if room.is_active else None

    async def join_room(self, code: str, joiner_id: str) -> Room:
        """Claim the joiner slot of the room *code*.

        Re-joining with the identity already holding the slot is idempotent,
        and the creator "joining" their own room gets it back unchanged.

        Raises:
            InvalidCodeShapeError: *code* fails local validation.
            RoomNotFoundError: No open or full room has this code.
            RoomFullError: The slot is held by another identity.
        """
        code = self._require_shape(code)
        with self._telemetry.span(
            SpanKind.ROOM_JOIN,
            "registry.join_room",
            room_code=code,
            attributes={Attr.USER_ID: joiner_id},
        ) as span_id:
            async with self._locks.locked(code):
                room = await self.find_room(code)
                if room is None:
                    raise RoomNotFoundError(f"No active room with code {code}")
                role = room.role_of(joiner_id)
                if role is not None:
                    self._telemetry.set_attribute(span_id, Attr.ROLE, role.value)
                    logger.debug("User %s already in room %s as %s", joiner_id, code, role)
                    return room
                if room.joiner_id is not None:
                    raise RoomFullError(f"Room {code} already has a joiner")
                record = await self._backend.update_joiner_slot(room.id, joiner_id)
            self._telemetry.set_attribute(span_id, Attr.ROLE, ParticipantRole.JOINER.value)
        joined = Room.from_record(record)
        logger.info("User %s joined room %s", joiner_id, code, extra={"room_code": code})
        return joined

    async def expire_stale_rooms(self, now: datetime | None = None) -> list[Room]:
        """Mark every active room older than the TTL as ``expired``.

        Idempotent: expired rooms are no longer active and are skipped on
        the next sweep.
        """
        now = now or datetime.now(UTC)
        ttl = self._config.room_ttl_seconds
        expired: list[Room] = []
        with self._telemetry.span(SpanKind.ROOM_SWEEP, "registry.expire_stale_rooms") as span_id:
            records = await self._backend.list_room_records({RoomStatus.OPEN, RoomStatus.FULL})
            for record in records:
                room = Room.from_record(record)
                if not room.is_expired(now, ttl):
                    continue
                async with self._locks.locked(room.code):
                    updated = await self._backend.update_room_status(room.id, RoomStatus.EXPIRED)
                expired.append(Room.from_record(updated))
            self._telemetry.set_attribute(span_id, Attr.EXPIRED_COUNT, len(expired))
        if expired:
            logger.info("Expired %d stale room(s)", len(expired))
        return expired

    async def leave_room(self, code: str, user_id: str) -> Room | None:
        """Apply the departure policy for *user_id* leaving *code*.

        Returns the updated room, or ``None`` when the room was deleted or is
        already inactive.

        Raises:
            NotInRoomError: *user_id* is neither creator nor joiner.
        """
        code = normalize_code(code)
        with self._telemetry.span(
            SpanKind.ROOM_LEAVE,
            "registry.leave_room",
            room_code=code,
            attributes={Attr.USER_ID: user_id},
        ):
            async with self._locks.locked(code):
                room = await self.find_room(code)
                if room is None:
                    return None
                role = room.role_of(user_id)
                if role is None:
                    raise NotInRoomError(f"User {user_id} is not a member of room {code}")
                if role == ParticipantRole.CREATOR:
                    result = await self._apply_creator_leave(room)
                else:
                    result = await self._apply_joiner_leave(room)
        logger.info("User %s left room %s as %s", user_id, code, role)
        return result

    async def _apply_creator_leave(self, room: Room) -> Room | None:
        if self._config.creator_leave_policy == CreatorLeavePolicy.DELETE:
            await self._backend.delete_room_record(room.id)
            return None
        record = await self._backend.update_room_status(room.id, RoomStatus.CLOSED)
        return Room.from_record(record)

    async def _apply_joiner_leave(self, room: Room) -> Room:
        if self._config.joiner_leave_policy == JoinerLeavePolicy.REOPEN:
            record = await self._backend.clear_joiner_slot(room.id)
        else:
            record = await self._backend.update_room_status(room.id, RoomStatus.CLOSED)
        return Room.from_record(record)

    async def close_room(self, code: str) -> Room | None:
        """Close the active room *code*. Returns ``None`` if none is active."""
        code = normalize_code(code)
        async with self._locks.locked(code):
            room = await self.find_room(code)
            if room is None:
                return None
            record = await self._backend.update_room_status(room.id, RoomStatus.CLOSED)
        logger.info("Closed room %s", code)
        return Room.from_record(record)


def _report(on_step: StepCallback | None, check: CodeCheck) -> None:
    if on_step is None:
        return
    try:
        on_step(check)
    except Exception:
        logger.exception("Code check step callback failed")
