"""In-memory implementation of BackendService."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pairroom.backend.base import (
    BackendAction,
    BackendCallback,
    BackendEvent,
    BackendService,
    BlobInfo,
    ErrorCallback,
    Unsubscribe,
    messages_topic,
    room_topic,
)
from pairroom.core.errors import (
    BackendUnavailableError,
    DuplicateCodeError,
    PushUnavailableError,
    RoomFullError,
    RoomNotFoundError,
)
from pairroom.core.locks import InMemoryLockManager, RoomLockManager
from pairroom.models.enums import MessageType, RoomStatus

logger = logging.getLogger("pairroom.backend.memory")


class InMemoryBackend(BackendService):
    """Dict-based backend for development and testing.

    Push events are queued per subscription and delivered from a background
    task, so delivery is asynchronous like a real realtime channel.

    Fault injection for tests:

    * ``available = False`` makes every store call raise
      ``BackendUnavailableError``.
    * ``push_enabled=False`` makes ``subscribe`` raise
      ``PushUnavailableError``.
    * :meth:`pause_push` silences push delivery (a stalled channel);
      :meth:`resume_push` restores it.
    * :meth:`break_push` reports an error on every live subscription.
    """

    def __init__(
        self,
        *,
        push_enabled: bool = True,
        latency: float = 0.0,
        lock_manager: RoomLockManager | None = None,
    ) -> None:
        self.available = True
        self._push_enabled = push_enabled
        self._push_paused = False
        self._latency = latency
        self._locks = lock_manager or InMemoryLockManager()
        self._rooms: dict[str, dict[str, Any]] = {}
        self._active_codes: dict[str, str] = {}
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._next_message_id: dict[str, int] = {}
        self._blobs: dict[str, tuple[bytes, str]] = {}
        self._subscriptions: dict[str, _Subscription] = {}

    @property
    def contiguous_ids(self) -> bool:
        return True

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _request(self) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        if not self.available:
            raise BackendUnavailableError("in-memory backend marked unavailable")

    # Room records

    async def create_room_record(self, code: str, creator_id: str) -> dict[str, Any]:
        await self._request()
        if code in self._active_codes:
            raise DuplicateCodeError(f"Room code {code} is already active")
        room_id = uuid4().hex
        record: dict[str, Any] = {
            "id": room_id,
            "code": code,
            "creator_id": creator_id,
            "joiner_id": None,
            "status": RoomStatus.OPEN.value,
            "created_at": datetime.now(UTC),
            "closed_at": None,
        }
        self._rooms[room_id] = record
        self._active_codes[code] = room_id
        self._messages.setdefault(code, [])
        self._next_message_id.setdefault(code, 1)
        self._publish(room_topic(code), BackendAction.CREATE, record)
        return dict(record)

    async def find_room_record(self, code: str) -> dict[str, Any] | None:
        await self._request()
        room_id = self._active_codes.get(code)
        if room_id is None:
            return None
        return dict(self._rooms[room_id])

    def _get(self, room_id: str) -> dict[str, Any]:
        record = self._rooms.get(room_id)
        if record is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        return record

    async def update_joiner_slot(self, room_id: str, joiner_id: str) -> dict[str, Any]:
        await self._request()
        async with self._locks.locked(room_id):
            record = self._get(room_id)
            if RoomStatus(record["status"]) not in (RoomStatus.OPEN, RoomStatus.FULL):
                raise RoomNotFoundError(f"Room {record['code']} is {record['status']}")
            current = record["joiner_id"]
            if current == joiner_id:
                return dict(record)
            if current is not None:
                raise RoomFullError(f"Room {record['code']} joiner slot held by {current}")
            # Simulated write latency inside the critical section.
            if self._latency:
                await asyncio.sleep(self._latency)
            record["joiner_id"] = joiner_id
            record["status"] = RoomStatus.FULL.value
        self._publish(room_topic(record["code"]), BackendAction.UPDATE, record)
        return dict(record)

    async def clear_joiner_slot(self, room_id: str) -> dict[str, Any]:
        await self._request()
        async with self._locks.locked(room_id):
            record = self._get(room_id)
            record["joiner_id"] = None
            if record["status"] == RoomStatus.FULL.value:
                record["status"] = RoomStatus.OPEN.value
        self._publish(room_topic(record["code"]), BackendAction.UPDATE, record)
        return dict(record)

    async def update_room_status(self, room_id: str, status: RoomStatus) -> dict[str, Any]:
        await self._request()
        async with self._locks.locked(room_id):
            record = self._get(room_id)
            record["status"] = status.value
            if not status.is_active:
                record["closed_at"] = datetime.now(UTC)
                if self._active_codes.get(record["code"]) == room_id:
                    del self._active_codes[record["code"]]
        self._publish(room_topic(record["code"]), BackendAction.UPDATE, record)
        return dict(record)

    async def delete_room_record(self, room_id: str) -> bool:
        await self._request()
        record = self._rooms.pop(room_id, None)
        if record is None:
            return False
        code = record["code"]
        if self._active_codes.get(code) == room_id:
            del self._active_codes[code]
        self._messages.pop(code, None)
        self._next_message_id.pop(code, None)
        self._publish(room_topic(code), BackendAction.DELETE, record)
        return True

    async def list_room_records(
        self, statuses: set[RoomStatus] | None = None
    ) -> list[dict[str, Any]]:
        await self._request()
        return [
            dict(r)
            for r in self._rooms.values()
            if statuses is None or RoomStatus(r["status"]) in statuses
        ]

    # Messages

    async def append_message(
        self,
        room_code: str,
        sender_id: str,
        type: MessageType,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self._request()
        if room_code not in self._messages:
            raise RoomNotFoundError(f"Room {room_code} not found")
        log = self._messages[room_code]
        timestamp = datetime.now(UTC)
        if log and log[-1]["timestamp"] > timestamp:
            timestamp = log[-1]["timestamp"]
        message_id = self._next_message_id[room_code]
        self._next_message_id[room_code] = message_id + 1
        record: dict[str, Any] = {
            "id": message_id,
            "room_code": room_code,
            "sender_id": sender_id,
            "type": MessageType(type).value,
            "content": content,
            "timestamp": timestamp,
            "metadata": dict(metadata) if metadata else None,
        }
        log.append(record)
        self._publish(messages_topic(room_code), BackendAction.CREATE, record)
        return dict(record)

    async def list_messages(
        self, room_code: str, since_id: int | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        await self._request()
        log = self._messages.get(room_code, [])
        records = [dict(m) for m in log if since_id is None or m["id"] > since_id]
        if limit is not None:
            records = records[-limit:] if since_id is None else records[:limit]
        return records

    # Push

    async def subscribe(
        self,
        topic: str,
        callback: BackendCallback,
        on_error: ErrorCallback | None = None,
    ) -> Unsubscribe:
        await self._request()
        if not self._push_enabled:
            raise PushUnavailableError("push is disabled on this backend")
        sub = _Subscription(uuid4().hex, topic, callback, on_error)
        self._subscriptions[sub.sub_id] = sub
        sub.start()

        def unsubscribe() -> None:
            removed = self._subscriptions.pop(sub.sub_id, None)
            if removed is not None:
                removed.stop()

        return unsubscribe

    def _publish(self, topic: str, action: BackendAction, record: dict[str, Any]) -> None:
        if self._push_paused:
            return
        event = BackendEvent(topic=topic, action=action, payload=dict(record))
        for sub in list(self._subscriptions.values()):
            if sub.topic == topic:
                sub.enqueue(event)

    def heartbeat(self) -> None:
        """Send a heartbeat on every live subscription."""
        if self._push_paused:
            return
        for sub in list(self._subscriptions.values()):
            sub.enqueue(BackendEvent(topic=sub.topic, action=BackendAction.HEARTBEAT))

    def pause_push(self) -> None:
        """Silently stop delivering push events (simulates a stalled channel)."""
        self._push_paused = True

    def resume_push(self) -> None:
        self._push_paused = False

    def break_push(self, error: Exception | None = None) -> None:
        """Report a push failure to every subscriber and drop the subscriptions."""
        exc = error or BackendUnavailableError("push channel lost")
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        for sub in subs:
            sub.fail(exc)

    # Blobs

    async def upload_blob(self, data: bytes, filename: str, content_type: str) -> BlobInfo:
        await self._request()
        blob_id = uuid4().hex
        self._blobs[blob_id] = (bytes(data), content_type)
        return BlobInfo(
            id=blob_id,
            url=f"memory://blobs/{blob_id}/{filename}",
            size=len(data),
            content_type=content_type,
        )

    async def get_blob_url(self, blob_id: str) -> str:
        await self._request()
        if blob_id not in self._blobs:
            raise KeyError(blob_id)
        return f"memory://blobs/{blob_id}"

    def get_blob(self, blob_id: str) -> bytes:
        return self._blobs[blob_id][0]

    async def close(self) -> None:
        for sub in list(self._subscriptions.values()):
            sub.stop()
        self._subscriptions.clear()


class _Subscription:
    """Queue plus background task delivering events to one callback."""

    def __init__(
        self,
        sub_id: str,
        topic: str,
        callback: BackendCallback,
        on_error: ErrorCallback | None,
    ) -> None:
        self.sub_id = sub_id
        self.topic = topic
        self._callback = callback
        self._on_error = on_error
        self._queue: deque[BackendEvent] = deque()
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    def enqueue(self, event: BackendEvent) -> None:
        if self._stopped:
            return
        self._queue.append(event)
        self._wakeup.set()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"pairroom-push:{self.topic}")

    def stop(self) -> None:
        self._stopped = True
        self._queue.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def fail(self, error: Exception) -> None:
        self.stop()
        if self._on_error is not None:
            task = asyncio.get_running_loop().create_task(self._on_error(error))
            task.add_done_callback(_log_task_error)

    async def _run(self) -> None:
        while not self._stopped:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._queue and not self._stopped:
                event = self._queue.popleft()
                try:
                    await self._callback(event)
                except Exception:
                    logger.exception("Error in push callback for topic %s", self.topic)


def _log_task_error(task: asyncio.Task[None]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Push error handler failed", exc_info=task.exception())
