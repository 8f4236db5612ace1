"""Tests for RoomRegistry."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from pairroom.backend.memory import InMemoryBackend
from pairroom.config import PairRoomConfig
from pairroom.core.codes import CodeGenerator
from pairroom.core.errors import (
    BackendUnavailableError,
    DuplicateCodeError,
    InvalidCodeShapeError,
    NotInRoomError,
    RoomFullError,
    RoomNotFoundError,
)
from pairroom.core.registry import CodeCheck, RoomRegistry, normalize_code
from pairroom.models.enums import RoomStatus
from pairroom.telemetry.base import Attr, SpanKind
from pairroom.telemetry.mock import MockTelemetryProvider


class ScriptedCodes(CodeGenerator):
    """Hands out a fixed sequence of codes."""

    def __init__(self, codes: list[str]) -> None:
        super().__init__()
        self._script = list(codes)

    def generate(self, length: int | None = None) -> str:
        return self._script.pop(0)


class TestCodeShape:
    def test_normalize(self) -> None:
        assert normalize_code("  a1b2c3\n") == "A1B2C3"

    @pytest.mark.parametrize(
        ("raw", "length_ok", "format_ok"),
        [
            ("A1B2C3", True, True),
            ("a1b2c3", True, True),
            ("ABC", False, True),
            ("A1B2C3D", False, True),
            ("A1-2C3", True, False),
            ("", False, False),
        ],
    )
    def test_validate(
        self, registry: RoomRegistry, raw: str, length_ok: bool, format_ok: bool
    ) -> None:
        shape = registry.validate_code_shape(raw)
        assert shape.length_ok is length_ok
        assert shape.format_ok is format_ok
        assert shape.valid is (length_ok and format_ok)


class TestCheckCode:
    async def test_bad_length_stops_early(self, registry: RoomRegistry) -> None:
        steps: list[CodeCheck] = []
        check = await registry.check_code("ABC", on_step=steps.append)
        assert len(steps) == 1
        assert check.failed_step == "length_ok"
        assert check.format_ok is None
        assert not check.passed

    async def test_bad_format_never_hits_backend(
        self, registry: RoomRegistry, backend: InMemoryBackend
    ) -> None:
        backend.available = False
        check = await registry.check_code("AB-C12")
        assert check.failed_step == "format_ok"
        assert check.exists is None
        assert check.error is None

    async def test_unknown_code(self, registry: RoomRegistry) -> None:
        steps: list[CodeCheck] = []
        check = await registry.check_code("ZZZZZZ", on_step=steps.append)
        assert [s.failed_step for s in steps] == [None, None, "exists"]
        assert check.exists is False

    async def test_open_room_passes(self, registry: RoomRegistry) -> None:
        room = await registry.create_room("A1B2C3", "alice")
        steps: list[CodeCheck] = []
        check = await registry.check_code(" a1b2c3 ", on_step=steps.append)
        assert len(steps) == 4
        assert check.passed
        assert check.room is not None
        assert check.room.id == room.id

    async def test_full_room_unavailable_except_for_members(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        await registry.join_room("A1B2C3", "bob")
        assert (await registry.check_code("A1B2C3", user_id="carol")).failed_step == "available"
        assert (await registry.check_code("A1B2C3", user_id="bob")).passed
        assert (await registry.check_code("A1B2C3")).available is False

    async def test_backend_error_recorded(
        self, registry: RoomRegistry, backend: InMemoryBackend
    ) -> None:
        backend.available = False
        check = await registry.check_code("A1B2C3")
        assert isinstance(check.error, BackendUnavailableError)
        assert check.exists is None
        assert not check.passed

    async def test_step_callback_errors_isolated(self, registry: RoomRegistry) -> None:
        def explode(check: CodeCheck) -> None:
            raise RuntimeError("ui bug")

        check = await registry.check_code("ZZZZZZ", on_step=explode)
        assert check.exists is False


class TestCreate:
    async def test_create(self, registry: RoomRegistry) -> None:
        room = await registry.create_room("a1b2c3", "alice")
        assert room.code == "A1B2C3"
        assert room.status == RoomStatus.OPEN
        assert room.creator_id == "alice"
        assert room.joiner_id is None

    async def test_invalid_shape(self, registry: RoomRegistry) -> None:
        with pytest.raises(InvalidCodeShapeError) as exc_info:
            await registry.create_room("AB", "alice")
        assert "6 characters" in exc_info.value.user_message

    async def test_duplicate(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        with pytest.raises(DuplicateCodeError):
            await registry.create_room("A1B2C3", "bob")

    async def test_fresh_code_retries_collisions(
        self, backend: InMemoryBackend, config: PairRoomConfig
    ) -> None:
        telemetry = MockTelemetryProvider()
        registry = RoomRegistry(
            backend,
            config,
            code_generator=ScriptedCodes(["A1B2C3", "Q9Q9Q9"]),
            telemetry=telemetry,
        )
        await registry.create_room("A1B2C3", "someone")
        room = await registry.create_room_with_fresh_code("alice")
        assert room.code == "Q9Q9Q9"
        metrics = telemetry.get_metrics("pairroom.room.code_attempts")
        assert [m["value"] for m in metrics] == [2.0]

    async def test_fresh_code_gives_up(self, backend: InMemoryBackend) -> None:
        config = PairRoomConfig(max_code_attempts=2)
        registry = RoomRegistry(
            backend, config, code_generator=ScriptedCodes(["A1B2C3"] * 3)
        )
        await registry.create_room("A1B2C3", "someone")
        with pytest.raises(DuplicateCodeError):
            await registry.create_room_with_fresh_code("alice")

    async def test_create_span(self, backend: InMemoryBackend) -> None:
        telemetry = MockTelemetryProvider()
        registry = RoomRegistry(backend, telemetry=telemetry)
        await registry.create_room("A1B2C3", "alice")
        spans = telemetry.get_spans(SpanKind.ROOM_CREATE)
        assert len(spans) == 1
        assert spans[0].room_code == "A1B2C3"
        assert spans[0].attributes[Attr.BACKEND_TYPE] == "InMemoryBackend"


class TestJoin:
    async def test_join_fills_slot(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        room = await registry.join_room("a1b2c3", "bob")
        assert room.status == RoomStatus.FULL
        assert room.joiner_id == "bob"

    async def test_join_unknown(self, registry: RoomRegistry) -> None:
        with pytest.raises(RoomNotFoundError):
            await registry.join_room("ZZZZZZ", "bob")

    async def test_join_full(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        await registry.join_room("A1B2C3", "bob")
        with pytest.raises(RoomFullError):
            await registry.join_room("A1B2C3", "carol")

    async def test_rejoin_is_idempotent(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        first = await registry.join_room("A1B2C3", "bob")
        again = await registry.join_room("A1B2C3", "bob")
        assert again == first

    async def test_creator_join_returns_room_unchanged(self, registry: RoomRegistry) -> None:
        created = await registry.create_room("A1B2C3", "alice")
        room = await registry.join_room("A1B2C3", "alice")
        assert room.status == RoomStatus.OPEN
        assert room.id == created.id

    async def test_concurrent_joins_single_winner(self, config: PairRoomConfig) -> None:
        registry = RoomRegistry(InMemoryBackend(latency=0.005), config)
        await registry.create_room("A1B2C3", "alice")
        results = await asyncio.gather(
            registry.join_room("A1B2C3", "bob"),
            registry.join_room("A1B2C3", "carol"),
            registry.join_room("A1B2C3", "dave"),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, BaseException)]
        assert len(winners) == 1
        assert all(isinstance(r, RoomFullError) for r in results if r not in winners)
        room = await registry.find_room("A1B2C3")
        assert room is not None
        assert room.joiner_id == winners[0].joiner_id

    async def test_join_closed_room(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        await registry.close_room("A1B2C3")
        with pytest.raises(RoomNotFoundError):
            await registry.join_room("A1B2C3", "bob")


class TestExpire:
    async def test_sweep(self, registry: RoomRegistry, config: PairRoomConfig) -> None:
        await registry.create_room("A1B2C3", "alice")
        later = datetime.now(UTC) + timedelta(seconds=config.room_ttl_seconds + 1)
        expired = await registry.expire_stale_rooms(now=later)
        assert [r.code for r in expired] == ["A1B2C3"]
        assert expired[0].status == RoomStatus.EXPIRED
        assert await registry.find_room("A1B2C3") is None
        assert await registry.expire_stale_rooms(now=later) == []

    async def test_fresh_rooms_kept(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        assert await registry.expire_stale_rooms() == []
        assert await registry.find_room("A1B2C3") is not None

    async def test_expired_code_can_be_reused(
        self, registry: RoomRegistry, config: PairRoomConfig
    ) -> None:
        await registry.create_room("A1B2C3", "alice")
        later = datetime.now(UTC) + timedelta(seconds=config.room_ttl_seconds + 1)
        await registry.expire_stale_rooms(now=later)
        room = await registry.create_room("A1B2C3", "bob")
        assert room.creator_id == "bob"


class TestLeave:
    async def test_creator_leave_deactivates(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        await registry.join_room("A1B2C3", "bob")
        room = await registry.leave_room("A1B2C3", "alice")
        assert room is not None
        assert room.status == RoomStatus.CLOSED
        assert await registry.find_room("A1B2C3") is None

    async def test_creator_leave_deletes(self, backend: InMemoryBackend) -> None:
        registry = RoomRegistry(backend, PairRoomConfig(creator_leave_policy="delete"))
        await registry.create_room("A1B2C3", "alice")
        assert await registry.leave_room("A1B2C3", "alice") is None
        assert await backend.list_room_records() == []

    async def test_joiner_leave_closes(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        await registry.join_room("A1B2C3", "bob")
        room = await registry.leave_room("A1B2C3", "bob")
        assert room is not None
        assert room.status == RoomStatus.CLOSED

    async def test_joiner_leave_reopens(self, backend: InMemoryBackend) -> None:
        registry = RoomRegistry(backend, PairRoomConfig(joiner_leave_policy="reopen"))
        await registry.create_room("A1B2C3", "alice")
        await registry.join_room("A1B2C3", "bob")
        room = await registry.leave_room("A1B2C3", "bob")
        assert room is not None
        assert room.status == RoomStatus.OPEN
        assert room.joiner_id is None
        rejoined = await registry.join_room("A1B2C3", "carol")
        assert rejoined.joiner_id == "carol"

    async def test_stranger_cannot_leave(self, registry: RoomRegistry) -> None:
        await registry.create_room("A1B2C3", "alice")
        with pytest.raises(NotInRoomError):
            await registry.leave_room("A1B2C3", "mallory")

    async def test_leave_inactive_room(self, registry: RoomRegistry) -> None:
        assert await registry.leave_room("ZZZZZZ", "alice") is None
