"""Tests for SyncEngine: ordering, dedupe, fallback and presence."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from pairroom.backend.base import (
    BackendAction,
    BackendCallback,
    BackendEvent,
    ErrorCallback,
    Unsubscribe,
    messages_topic,
)
from pairroom.backend.memory import InMemoryBackend
from pairroom.config import PairRoomConfig
from pairroom.core.errors import BackendUnavailableError
from pairroom.core.registry import RoomRegistry
from pairroom.core.sync import SyncEngine
from pairroom.models.enums import (
    JoinerLeavePolicy,
    MessageType,
    PresenceEventType,
    SyncMode,
    SystemCode,
)
from pairroom.models.message import Message, SystemMetadata
from pairroom.models.participant import PresenceEvent
from pairroom.telemetry.base import SpanKind
from pairroom.telemetry.mock import MockTelemetryProvider

CODE = "A1B2C3"


class ManualPushBackend(InMemoryBackend):
    """Memory backend whose message push is driven by the test."""

    def __init__(self) -> None:
        super().__init__()
        self.callbacks: dict[str, BackendCallback] = {}

    async def subscribe(
        self,
        topic: str,
        callback: BackendCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        if topic != messages_topic(CODE):
            return await super().subscribe(topic, callback, on_error)
        self.callbacks[topic] = callback
        return lambda: self.callbacks.pop(topic, None)

    async def push(self, message: Message) -> None:
        event = BackendEvent(
            topic=messages_topic(CODE), action=BackendAction.CREATE, payload=message.to_record()
        )
        await self.callbacks[messages_topic(CODE)](event)


class Recorder:
    """Collects everything a subscription delivers."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.presence: list[PresenceEvent] = []
        self.errors: list[Exception | None] = []

    @property
    def ids(self) -> list[int]:
        return [m.id for m in self.messages]

    def presence_of(self, kind: PresenceEventType) -> list[PresenceEvent]:
        return [p for p in self.presence if p.type == kind]

    async def on_message(self, message: Message) -> None:
        self.messages.append(message)

    async def on_presence(self, event: PresenceEvent) -> None:
        self.presence.append(event)

    async def on_error(self, error: Exception | None) -> None:
        self.errors.append(error)


async def _subscribe(engine: SyncEngine, recorder: Recorder) -> Any:
    return await engine.subscribe(
        CODE, recorder.on_message, recorder.on_presence, recorder.on_error
    )


async def _send(backend: InMemoryBackend, content: str, sender: str = "alice") -> None:
    await backend.append_message(CODE, sender, MessageType.TEXT, content)


@pytest.fixture
async def room(registry: RoomRegistry) -> None:
    await registry.create_room(CODE, "alice")


class TestOrdering:
    @pytest.fixture
    def manual(self) -> ManualPushBackend:
        return ManualPushBackend()

    @pytest.fixture
    async def engine(
        self, manual: ManualPushBackend, config: PairRoomConfig
    ) -> AsyncIterator[SyncEngine]:
        await manual.create_room_record(CODE, "alice")
        engine = SyncEngine(manual, config)
        yield engine
        engine.close()

    async def test_out_of_order_push_delivered_in_order(
        self,
        engine: SyncEngine,
        manual: ManualPushBackend,
        make_message: Callable[..., Message],
        wait_until,
    ) -> None:
        recorder = Recorder()
        await _subscribe(engine, recorder)
        m1, m2, m3 = (make_message(i) for i in (1, 2, 3))
        await manual.push(m3)
        await manual.push(m1)
        await manual.push(m2)
        await wait_until(lambda: len(recorder.messages) == 3)
        assert recorder.ids == [1, 2, 3]
        assert engine.watermark(CODE) == 3

    async def test_duplicates_dropped(
        self,
        engine: SyncEngine,
        manual: ManualPushBackend,
        make_message: Callable[..., Message],
        advance,
        wait_until,
    ) -> None:
        recorder = Recorder()
        await _subscribe(engine, recorder)
        m1 = make_message(1)
        await manual.push(m1)
        await manual.push(m1)
        await manual.push(make_message(2))
        await manual.push(m1)
        await wait_until(lambda: len(recorder.messages) == 2)
        await advance()
        assert recorder.ids == [1, 2]

    async def test_gap_flushed_after_reorder_window(
        self,
        engine: SyncEngine,
        manual: ManualPushBackend,
        make_message: Callable[..., Message],
        config: PairRoomConfig,
        wait_until,
    ) -> None:
        recorder = Recorder()
        await _subscribe(engine, recorder)
        await manual.push(make_message(1))
        await manual.push(make_message(3))
        await wait_until(lambda: recorder.ids == [1])
        await asyncio.sleep(config.reorder_window * 2)
        await wait_until(lambda: recorder.ids == [1, 3])
        # The late message is behind the watermark now.
        await manual.push(make_message(2))
        await asyncio.sleep(0.02)
        assert recorder.ids == [1, 3]

    async def test_malformed_push_dropped(
        self,
        engine: SyncEngine,
        manual: ManualPushBackend,
        make_message: Callable[..., Message],
        wait_until,
    ) -> None:
        recorder = Recorder()
        await _subscribe(engine, recorder)
        bad = BackendEvent(
            topic=messages_topic(CODE), action=BackendAction.CREATE, payload={"id": 1}
        )
        await manual.callbacks[messages_topic(CODE)](bad)
        await manual.push(make_message(1))
        await wait_until(lambda: recorder.ids == [1])


class SparseIdBackend(ManualPushBackend):
    """Manual push backend that does not promise gap-free ids."""

    @property
    def contiguous_ids(self) -> bool:
        return False


class TestSparseIds:
    @pytest.fixture
    def sparse(self) -> SparseIdBackend:
        return SparseIdBackend()

    async def _engine(self, sparse: SparseIdBackend, config: PairRoomConfig) -> SyncEngine:
        await sparse.create_room_record(CODE, "alice")
        return SyncEngine(sparse, config)

    async def test_out_of_order_push_reordered(
        self,
        sparse: SparseIdBackend,
        config: PairRoomConfig,
        make_message: Callable[..., Message],
        wait_until,
    ) -> None:
        engine = await self._engine(sparse, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        m1, m2, m3 = (make_message(i) for i in (1, 2, 3))
        await sparse.push(m3)
        await sparse.push(m1)
        await sparse.push(m2)
        await wait_until(lambda: len(recorder.messages) == 3)
        assert recorder.ids == [1, 2, 3]
        assert engine.watermark(CODE) == 3
        engine.close()

    async def test_skipped_ids_are_not_waited_for(
        self,
        sparse: SparseIdBackend,
        config: PairRoomConfig,
        make_message: Callable[..., Message],
        wait_until,
    ) -> None:
        engine = await self._engine(sparse, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        m4, m7, m10 = (make_message(i) for i in (4, 7, 10))
        await sparse.push(m10)
        await sparse.push(m4)
        await sparse.push(m4)
        await sparse.push(m7)
        await wait_until(lambda: len(recorder.messages) == 3)
        assert recorder.ids == [4, 7, 10]
        engine.close()

    async def test_poll_closes_gap_before_window(self, sparse: SparseIdBackend) -> None:
        engine = await self._engine(sparse, PairRoomConfig(reorder_window=5.0))
        recorder = Recorder()
        await _subscribe(engine, recorder)
        for text in ("one", "two", "three"):
            await _send(sparse, text)
        records = await sparse.list_messages(CODE)
        await sparse.push(Message.from_record(records[-1]))
        assert recorder.messages == []
        await engine._streams[CODE].poll_once()
        async with asyncio.timeout(1.0):
            while len(recorder.messages) < 3:
                await asyncio.sleep(0.01)
        assert [m.content for m in recorder.messages] == ["one", "two", "three"]
        assert engine.watermark(CODE) == 3
        engine.close()


class TestHistoryAndDedupe:
    async def test_history_then_push_no_duplicates(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until, advance
    ) -> None:
        await _send(backend, "one")
        await _send(backend, "two")
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        history = await engine.load_history(CODE)
        assert [m.content for m in history] == ["one", "two"]
        await _send(backend, "three")
        await wait_until(lambda: len(recorder.messages) == 3)
        # A redundant poll returns nothing new.
        await engine._streams[CODE].poll_once()
        await engine.load_history(CODE)
        await advance(10)
        assert [m.content for m in recorder.messages] == ["one", "two", "three"]
        engine.close()

    async def test_history_limit(self, backend: InMemoryBackend, room: None) -> None:
        for i in range(5):
            await _send(backend, str(i))
        engine = SyncEngine(backend, PairRoomConfig(history_limit=2))
        history = await engine.load_history(CODE)
        assert [m.content for m in history] == ["3", "4"]

    async def test_history_span(self, backend: InMemoryBackend, room: None) -> None:
        telemetry = MockTelemetryProvider()
        engine = SyncEngine(backend, telemetry=telemetry)
        await _send(backend, "hi")
        await engine.load_history(CODE)
        spans = telemetry.get_spans(SpanKind.SYNC_HISTORY)
        assert len(spans) == 1
        assert spans[0].room_code == CODE


class TestSubscription:
    async def test_resubscribe_same_callbacks_returns_same_handle(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None
    ) -> None:
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        first = await _subscribe(engine, recorder)
        second = await _subscribe(engine, recorder)
        assert first is second
        first.unsubscribe()

    async def test_double_unsubscribe(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None
    ) -> None:
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        handle = await _subscribe(engine, recorder)
        assert engine.mode(CODE) == SyncMode.PUSH
        handle.unsubscribe()
        handle.unsubscribe()
        assert not handle.active
        assert engine.mode(CODE) == SyncMode.CLOSED
        assert engine.watermark(CODE) is None
        assert backend.subscription_count == 0

    async def test_no_delivery_after_unsubscribe(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until
    ) -> None:
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        handle = await _subscribe(engine, recorder)
        await _send(backend, "before")
        await wait_until(lambda: len(recorder.messages) == 1)
        handle.unsubscribe()
        await _send(backend, "after")
        await asyncio.sleep(0.05)
        assert [m.content for m in recorder.messages] == ["before"]

    async def test_shared_stream_fans_out(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until
    ) -> None:
        engine = SyncEngine(backend, config)
        a, b = Recorder(), Recorder()
        handle_a = await _subscribe(engine, a)
        await _subscribe(engine, b)
        await _send(backend, "hi")
        await wait_until(lambda: len(a.messages) == 1 and len(b.messages) == 1)
        handle_a.unsubscribe()
        assert engine.mode(CODE) == SyncMode.PUSH
        engine.close()
        assert engine.mode(CODE) == SyncMode.CLOSED

    async def test_callback_errors_isolated(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until
    ) -> None:
        engine = SyncEngine(backend, config)
        seen: list[str] = []

        async def flaky(message: Message) -> None:
            seen.append(message.content)
            if message.content == "boom":
                raise RuntimeError("handler bug")

        async def on_presence(event: PresenceEvent) -> None:
            pass

        await engine.subscribe(CODE, flaky, on_presence)
        await _send(backend, "boom")
        await _send(backend, "fine")
        await wait_until(lambda: seen == ["boom", "fine"])
        engine.close()


class TestFallback:
    async def test_push_unavailable_polls(
        self, config: PairRoomConfig, wait_until
    ) -> None:
        backend = InMemoryBackend(push_enabled=False)
        await backend.create_room_record(CODE, "alice")
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        assert engine.mode(CODE) == SyncMode.POLLING
        await _send(backend, "one")
        await _send(backend, "two")
        await wait_until(lambda: len(recorder.messages) == 2)
        assert recorder.ids == [1, 2]
        engine.close()

    async def test_stalled_push_falls_back_and_recovers(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until
    ) -> None:
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        assert engine.mode(CODE) == SyncMode.PUSH

        backend.pause_push()
        await _send(backend, "during stall")
        await wait_until(lambda: engine.mode(CODE) == SyncMode.POLLING)
        await wait_until(lambda: len(recorder.messages) == 1)

        backend.resume_push()
        backend.heartbeat()
        await wait_until(lambda: engine.mode(CODE) == SyncMode.PUSH)
        await _send(backend, "after recovery")
        await wait_until(lambda: len(recorder.messages) == 2)
        assert recorder.ids == [1, 2]
        engine.close()

    async def test_broken_push_polls_then_resubscribes(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until
    ) -> None:
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)

        backend.break_push()
        await wait_until(lambda: engine.mode(CODE) == SyncMode.POLLING)
        await _send(backend, "polled")
        await wait_until(lambda: len(recorder.messages) == 1)

        await wait_until(lambda: backend.subscription_count == 2)
        await _send(backend, "pushed")
        await wait_until(lambda: engine.mode(CODE) == SyncMode.PUSH)
        await wait_until(lambda: len(recorder.messages) == 2)
        assert [m.content for m in recorder.messages] == ["polled", "pushed"]
        engine.close()

    async def test_poll_failures_report_connection_lost_and_restored(
        self, config: PairRoomConfig, wait_until
    ) -> None:
        backend = InMemoryBackend(push_enabled=False)
        await backend.create_room_record(CODE, "alice")
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)

        backend.available = False
        await wait_until(lambda: len(recorder.errors) == 1)
        assert isinstance(recorder.errors[0], BackendUnavailableError)

        backend.available = True
        await _send(backend, "back")
        await wait_until(lambda: len(recorder.errors) == 2)
        assert recorder.errors[1] is None
        await wait_until(lambda: len(recorder.messages) == 1)
        engine.close()

    async def test_poll_span(self, config: PairRoomConfig) -> None:
        backend = InMemoryBackend(push_enabled=False)
        await backend.create_room_record(CODE, "alice")
        telemetry = MockTelemetryProvider()
        engine = SyncEngine(backend, config, telemetry=telemetry)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        await engine._streams[CODE].poll_once()
        assert telemetry.get_spans(SpanKind.SYNC_POLL)
        engine.close()


class TestPresence:
    async def test_join_and_leave(
        self, backend: InMemoryBackend, room: None, wait_until
    ) -> None:
        config = PairRoomConfig(
            joiner_leave_policy=JoinerLeavePolicy.REOPEN, push_stall_timeout=5.0
        )
        registry = RoomRegistry(backend, config)
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        await wait_until(lambda: len(recorder.presence) == 1)
        assert recorder.presence[0].type == PresenceEventType.JOINED
        assert recorder.presence[0].participant is not None
        assert recorder.presence[0].participant.user_id == "alice"

        await registry.join_room(CODE, "bob")
        await wait_until(lambda: len(recorder.presence_of(PresenceEventType.JOINED)) == 2)
        joined = recorder.presence_of(PresenceEventType.JOINED)[1]
        assert joined.participant is not None
        assert joined.participant.user_id == "bob"

        await registry.leave_room(CODE, "bob")
        await wait_until(lambda: len(recorder.presence_of(PresenceEventType.LEFT)) == 1)
        left = recorder.presence_of(PresenceEventType.LEFT)[0]
        assert left.participant is not None
        assert left.participant.user_id == "bob"
        assert not left.participant.online
        engine.close()

    async def test_left_system_message(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until
    ) -> None:
        registry = RoomRegistry(backend, config)
        await registry.join_room(CODE, "bob")
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        await wait_until(lambda: len(recorder.presence_of(PresenceEventType.JOINED)) == 2)
        await backend.append_message(
            CODE,
            "bob",
            MessageType.SYSTEM,
            "bob left",
            SystemMetadata(code=SystemCode.PARTICIPANT_LEFT, user_id="bob").model_dump(),
        )
        await wait_until(lambda: len(recorder.presence_of(PresenceEventType.LEFT)) == 1)
        engine.close()

    async def test_room_closed_once(
        self, backend: InMemoryBackend, config: PairRoomConfig, room: None, wait_until, advance
    ) -> None:
        registry = RoomRegistry(backend, config)
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        await registry.leave_room(CODE, "alice")
        await wait_until(
            lambda: len(recorder.presence_of(PresenceEventType.ROOM_CLOSED)) == 1
        )
        await engine._streams[CODE].poll_once()
        await advance(10)
        assert len(recorder.presence_of(PresenceEventType.ROOM_CLOSED)) == 1
        engine.close()

    async def test_deleted_room_reported_closed(
        self, backend: InMemoryBackend, room: None, wait_until
    ) -> None:
        config = PairRoomConfig(creator_leave_policy="delete")
        registry = RoomRegistry(backend, config)
        engine = SyncEngine(backend, config)
        recorder = Recorder()
        await _subscribe(engine, recorder)
        await registry.leave_room(CODE, "alice")
        await wait_until(
            lambda: len(recorder.presence_of(PresenceEventType.ROOM_CLOSED)) == 1
        )
        engine.close()
