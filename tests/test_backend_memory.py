"""Tests for InMemoryBackend."""

from __future__ import annotations

import asyncio

import pytest

from pairroom.backend.base import BackendAction, BackendEvent, messages_topic, room_topic
from pairroom.backend.memory import InMemoryBackend
from pairroom.core.errors import (
    BackendUnavailableError,
    DuplicateCodeError,
    PushUnavailableError,
    RoomFullError,
    RoomNotFoundError,
)
from pairroom.models.enums import MessageType, RoomStatus


class TestRoomRecords:
    async def test_create_and_find(self, backend: InMemoryBackend) -> None:
        record = await backend.create_room_record("A1B2C3", "alice")
        assert record["status"] == "open"
        assert record["joiner_id"] is None
        found = await backend.find_room_record("A1B2C3")
        assert found is not None
        assert found["id"] == record["id"]

    async def test_duplicate_active_code(self, backend: InMemoryBackend) -> None:
        await backend.create_room_record("A1B2C3", "alice")
        with pytest.raises(DuplicateCodeError):
            await backend.create_room_record("A1B2C3", "bob")

    async def test_code_reusable_after_close(self, backend: InMemoryBackend) -> None:
        record = await backend.create_room_record("A1B2C3", "alice")
        await backend.update_room_status(record["id"], RoomStatus.CLOSED)
        assert await backend.find_room_record("A1B2C3") is None
        again = await backend.create_room_record("A1B2C3", "bob")
        assert again["id"] != record["id"]

    async def test_joiner_slot(self, backend: InMemoryBackend) -> None:
        record = await backend.create_room_record("A1B2C3", "alice")
        full = await backend.update_joiner_slot(record["id"], "bob")
        assert full["status"] == "full"
        assert full["joiner_id"] == "bob"
        assert (await backend.update_joiner_slot(record["id"], "bob"))["joiner_id"] == "bob"
        with pytest.raises(RoomFullError):
            await backend.update_joiner_slot(record["id"], "carol")

    async def test_concurrent_claims_single_winner(self) -> None:
        backend = InMemoryBackend(latency=0.01)
        record = await backend.create_room_record("A1B2C3", "alice")
        results = await asyncio.gather(
            backend.update_joiner_slot(record["id"], "bob"),
            backend.update_joiner_slot(record["id"], "carol"),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, RoomFullError)]
        assert len(winners) == 1
        assert len(losers) == 1

    async def test_clear_joiner_slot_reopens(self, backend: InMemoryBackend) -> None:
        record = await backend.create_room_record("A1B2C3", "alice")
        await backend.update_joiner_slot(record["id"], "bob")
        cleared = await backend.clear_joiner_slot(record["id"])
        assert cleared["status"] == "open"
        assert cleared["joiner_id"] is None

    async def test_claim_on_closed_room(self, backend: InMemoryBackend) -> None:
        record = await backend.create_room_record("A1B2C3", "alice")
        await backend.update_room_status(record["id"], RoomStatus.CLOSED)
        with pytest.raises(RoomNotFoundError):
            await backend.update_joiner_slot(record["id"], "bob")

    async def test_delete(self, backend: InMemoryBackend) -> None:
        record = await backend.create_room_record("A1B2C3", "alice")
        await backend.append_message("A1B2C3", "alice", MessageType.TEXT, "hi")
        assert await backend.delete_room_record(record["id"]) is True
        assert await backend.delete_room_record(record["id"]) is False
        assert await backend.list_messages("A1B2C3") == []

    async def test_list_by_status(self, backend: InMemoryBackend) -> None:
        a = await backend.create_room_record("AAAAAA", "alice")
        await backend.create_room_record("BBBBBB", "bob")
        await backend.update_room_status(a["id"], RoomStatus.EXPIRED)
        expired = await backend.list_room_records({RoomStatus.EXPIRED})
        assert [r["code"] for r in expired] == ["AAAAAA"]
        assert len(await backend.list_room_records()) == 2

    async def test_unavailable(self, backend: InMemoryBackend) -> None:
        backend.available = False
        with pytest.raises(BackendUnavailableError):
            await backend.find_room_record("A1B2C3")


class TestMessages:
    async def test_ids_are_contiguous(self, backend: InMemoryBackend) -> None:
        await backend.create_room_record("A1B2C3", "alice")
        ids = [
            (await backend.append_message("A1B2C3", "alice", MessageType.TEXT, str(i)))["id"]
            for i in range(3)
        ]
        assert ids == [1, 2, 3]
        assert backend.contiguous_ids

    async def test_since_and_limit(self, backend: InMemoryBackend) -> None:
        await backend.create_room_record("A1B2C3", "alice")
        for i in range(5):
            await backend.append_message("A1B2C3", "alice", MessageType.TEXT, str(i))
        assert [m["id"] for m in await backend.list_messages("A1B2C3", since_id=3)] == [4, 5]
        assert [m["id"] for m in await backend.list_messages("A1B2C3", limit=2)] == [4, 5]
        assert [m["id"] for m in await backend.list_messages("A1B2C3", since_id=1, limit=2)] == [
            2,
            3,
        ]

    async def test_unknown_room(self, backend: InMemoryBackend) -> None:
        with pytest.raises(RoomNotFoundError):
            await backend.append_message("ZZZZZZ", "alice", MessageType.TEXT, "hi")


class TestPush:
    async def test_events_delivered_in_order(self, backend: InMemoryBackend, wait_until) -> None:
        await backend.create_room_record("A1B2C3", "alice")
        events: list[BackendEvent] = []

        async def on_event(event: BackendEvent) -> None:
            events.append(event)

        unsubscribe = await backend.subscribe(messages_topic("A1B2C3"), on_event)
        for i in range(3):
            await backend.append_message("A1B2C3", "alice", MessageType.TEXT, str(i))
        await wait_until(lambda: len(events) == 3)
        assert [e.payload["id"] for e in events] == [1, 2, 3]
        assert all(e.action == BackendAction.CREATE for e in events)

        unsubscribe()
        unsubscribe()
        await backend.append_message("A1B2C3", "alice", MessageType.TEXT, "late")
        await asyncio.sleep(0.02)
        assert len(events) == 3
        assert backend.subscription_count == 0

    async def test_room_topic(self, backend: InMemoryBackend, wait_until) -> None:
        record = await backend.create_room_record("A1B2C3", "alice")
        events: list[BackendEvent] = []

        async def on_event(event: BackendEvent) -> None:
            events.append(event)

        await backend.subscribe(room_topic("A1B2C3"), on_event)
        await backend.update_joiner_slot(record["id"], "bob")
        await wait_until(lambda: len(events) == 1)
        assert events[0].action == BackendAction.UPDATE
        assert events[0].payload["joiner_id"] == "bob"

    async def test_push_disabled(self) -> None:
        backend = InMemoryBackend(push_enabled=False)

        async def on_event(event: BackendEvent) -> None:
            pass

        with pytest.raises(PushUnavailableError):
            await backend.subscribe("messages.A1B2C3", on_event)

    async def test_pause_and_heartbeat(self, backend: InMemoryBackend, wait_until) -> None:
        await backend.create_room_record("A1B2C3", "alice")
        events: list[BackendEvent] = []

        async def on_event(event: BackendEvent) -> None:
            events.append(event)

        await backend.subscribe(messages_topic("A1B2C3"), on_event)
        backend.pause_push()
        await backend.append_message("A1B2C3", "alice", MessageType.TEXT, "lost")
        backend.heartbeat()
        await asyncio.sleep(0.02)
        assert events == []
        backend.resume_push()
        backend.heartbeat()
        await wait_until(lambda: len(events) == 1)
        assert events[0].action == BackendAction.HEARTBEAT

    async def test_break_push_reports_error(self, backend: InMemoryBackend, wait_until) -> None:
        errors: list[Exception] = []

        async def on_event(event: BackendEvent) -> None:
            pass

        async def on_error(exc: Exception) -> None:
            errors.append(exc)

        await backend.subscribe("messages.A1B2C3", on_event, on_error)
        backend.break_push()
        await wait_until(lambda: len(errors) == 1)
        assert isinstance(errors[0], BackendUnavailableError)
        assert backend.subscription_count == 0

    async def test_callback_error_isolated(self, backend: InMemoryBackend, wait_until) -> None:
        await backend.create_room_record("A1B2C3", "alice")
        seen: list[int] = []

        async def on_event(event: BackendEvent) -> None:
            seen.append(event.payload["id"])
            if event.payload["id"] == 1:
                raise RuntimeError("boom")

        await backend.subscribe(messages_topic("A1B2C3"), on_event)
        await backend.append_message("A1B2C3", "alice", MessageType.TEXT, "a")
        await backend.append_message("A1B2C3", "alice", MessageType.TEXT, "b")
        await wait_until(lambda: seen == [1, 2])


class TestBlobs:
    async def test_upload(self, backend: InMemoryBackend) -> None:
        info = await backend.upload_blob(b"hello", "a.txt", "text/plain")
        assert info.size == 5
        assert info.url.startswith("memory://blobs/")
        assert backend.get_blob(info.id) == b"hello"
        assert (await backend.get_blob_url(info.id)).endswith(info.id)
