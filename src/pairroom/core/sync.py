"""Sync engine: merges push and poll streams into one ordered, deduplicated log."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Coroutine
from typing import Any

from pairroom.backend.base import (
    BackendAction,
    BackendEvent,
    BackendService,
    Unsubscribe,
    messages_topic,
    room_topic,
)
from pairroom.config import PairRoomConfig
from pairroom.core.circuit_breaker import CircuitBreaker
from pairroom.core.errors import BackendUnavailableError
from pairroom.models.enums import (
    MessageType,
    ParticipantRole,
    PresenceEventType,
    RoomStatus,
    SyncMode,
    SystemCode,
)
from pairroom.models.message import Message, SystemMetadata
from pairroom.models.participant import ParticipantPresence, PresenceEvent
from pairroom.telemetry.base import Attr, SpanKind, TelemetryProvider
from pairroom.telemetry.config import TelemetryConfig, resolve_provider

logger = logging.getLogger("pairroom.sync")

__all__ = [
    "ConnectionCallback",
    "MessageCallback",
    "PresenceCallback",
    "SyncEngine",
    "SyncSubscription",
]

MessageCallback = Callable[[Message], Coroutine[Any, Any, None]]
PresenceCallback = Callable[[PresenceEvent], Coroutine[Any, Any, None]]
ConnectionCallback = Callable[[Exception | None], Coroutine[Any, Any, None]]


class SyncSubscription:
    """Handle returned by :meth:`SyncEngine.subscribe`.

    :meth:`unsubscribe` is synchronous: when it returns, no callback of this
    handle fires again. Calling it twice is a no-op.
    """

    def __init__(
        self,
        engine: SyncEngine,
        room_code: str,
        on_message: MessageCallback,
        on_presence: PresenceCallback,
        on_error: ConnectionCallback | None,
    ) -> None:
        self._engine = engine
        self.room_code = room_code
        self.on_message = on_message
        self.on_presence = on_presence
        self.on_error = on_error
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(
        self,
        on_message: MessageCallback,
        on_presence: PresenceCallback,
        on_error: ConnectionCallback | None,
    ) -> bool:
        return (
            self.on_message == on_message
            and self.on_presence == on_presence
            and self.on_error == on_error
        )

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._engine._release(self)


class SyncEngine:
    """Per-room event streams over a :class:`BackendService`.

    Each subscribed room has one stream that owns the watermark (highest
    applied message id), the reorder buffer, the push subscriptions and the
    polling fallback. Messages reach ``on_message`` at most once and in id
    order; gaps are held for ``reorder_window`` seconds and then flushed in
    ``(timestamp, id)`` order.
    """

    def __init__(
        self,
        backend: BackendService,
        config: PairRoomConfig | None = None,
        *,
        telemetry: TelemetryConfig | TelemetryProvider | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or PairRoomConfig()
        self._telemetry = resolve_provider(telemetry)
        self._streams: dict[str, _RoomStream] = {}

    async def subscribe(
        self,
        room_code: str,
        on_message: MessageCallback,
        on_presence: PresenceCallback,
        on_error: ConnectionCallback | None = None,
    ) -> SyncSubscription:
        """Start (or reuse) the stream for *room_code*.

        Subscribing again with the same callbacks returns the existing
        handle; different callbacks share the room's single stream.
        """
        stream = self._streams.get(room_code)
        if stream is not None:
            for handle in stream.handles:
                if handle.matches(on_message, on_presence, on_error):
                    return handle
            handle = SyncSubscription(self, room_code, on_message, on_presence, on_error)
            stream.handles.append(handle)
            return handle

        stream = _RoomStream(room_code, self._backend, self._config, self._telemetry)
        handle = SyncSubscription(self, room_code, on_message, on_presence, on_error)
        stream.handles.append(handle)
        self._streams[room_code] = stream
        await stream.start()
        return handle

    async def load_history(self, room_code: str) -> list[Message]:
        """Fetch the latest ``history_limit`` messages in ``(timestamp, id)`` order.

        If the room has an active stream the page goes through the same
        dedupe path as push and poll, so nothing is delivered twice.
        """
        with self._telemetry.span(
            SpanKind.SYNC_HISTORY, "sync.load_history", room_code=room_code
        ) as span_id:
            records = await self._backend.list_messages(
                room_code, limit=self._config.history_limit
            )
            messages = _parse_messages(records)
            self._telemetry.set_attribute(span_id, Attr.MESSAGE_COUNT, len(messages))
        stream = self._streams.get(room_code)
        if stream is not None:
            stream.ingest_batch(messages)
        return messages

    def mode(self, room_code: str) -> SyncMode:
        """Whether *room_code* is currently fed by push or by polling."""
        stream = self._streams.get(room_code)
        return stream.mode if stream is not None else SyncMode.CLOSED

    def watermark(self, room_code: str) -> int | None:
        """Highest applied message id for *room_code*, or ``None`` if not subscribed."""
        stream = self._streams.get(room_code)
        return stream.watermark if stream is not None else None

    def _release(self, handle: SyncSubscription) -> None:
        stream = self._streams.get(handle.room_code)
        if stream is None:
            return
        if handle in stream.handles:
            stream.handles.remove(handle)
        if not stream.handles:
            del self._streams[handle.room_code]
            stream.close()

    def close(self) -> None:
        """Release every stream."""
        for stream in list(self._streams.values()):
            for handle in list(stream.handles):
                handle.unsubscribe()
        self._streams.clear()


class _RoomStream:
    """Merge state, presence state and transports for one room."""

    def __init__(
        self,
        room_code: str,
        backend: BackendService,
        config: PairRoomConfig,
        telemetry: TelemetryProvider,
    ) -> None:
        self.room_code = room_code
        self.handles: list[SyncSubscription] = []
        self.mode = SyncMode.CONNECTING
        self.watermark = 0
        self._backend = backend
        self._config = config
        self._telemetry = telemetry
        self._contiguous = backend.contiguous_ids
        self._stall_timeout = _stall_timeout(config, backend)
        self._pending: dict[int, Message] = {}
        self._flush_handle: asyncio.TimerHandle | None = None
        self._push_unsubs: list[Unsubscribe] = []
        self._push_alive = False
        self._last_push = 0.0
        self._next_push_retry = 0.0
        self._poll_task: asyncio.Task[None] | None = None
        self._watchdog_task: asyncio.Task[None] | None = None
        self._catch_up_task: asyncio.Task[None] | None = None
        self._breaker = CircuitBreaker(config.max_poll_failures, config.poll_recovery_timeout)
        self._connection_lost = False
        self._present: set[str] = set()
        self._roles: dict[str, ParticipantRole] = {}
        self._room_closed = False
        self._outbox: deque[tuple[str, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._delivery_task: asyncio.Task[None] | None = None
        self._closed = False

    # -- Lifecycle --

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._delivery_task = loop.create_task(
            self._deliver(), name=f"pairroom-sync-delivery:{self.room_code}"
        )
        await self._connect_push()
        if self._closed:
            return
        if self._push_alive:
            self._set_mode(SyncMode.PUSH, "push subscribed")
            self._watchdog_task = loop.create_task(
                self._watch_push(), name=f"pairroom-sync-watchdog:{self.room_code}"
            )
        else:
            self._start_polling("push unavailable")
        await self._load_snapshot()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.mode = SyncMode.CLOSED
        self._drop_push()
        for task in (
            self._poll_task,
            self._watchdog_task,
            self._catch_up_task,
            self._delivery_task,
        ):
            if task is not None and not task.done():
                task.cancel()
        self._poll_task = self._watchdog_task = self._catch_up_task = self._delivery_task = None
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._pending.clear()
        self._outbox.clear()
        logger.debug("Closed sync stream for room %s", self.room_code)

    def _set_mode(self, mode: SyncMode, reason: str) -> None:
        if self.mode == mode:
            return
        logger.info(
            "Room %s sync mode %s -> %s (%s)",
            self.room_code,
            self.mode,
            mode,
            reason,
            extra={"room_code": self.room_code, "sync_mode": mode.value},
        )
        self.mode = mode

    # -- Push --

    async def _connect_push(self) -> None:
        loop = asyncio.get_running_loop()
        self._next_push_retry = loop.time() + self._stall_timeout
        unsubs: list[Unsubscribe] = []
        try:
            for topic in (room_topic(self.room_code), messages_topic(self.room_code)):
                unsubs.append(
                    await self._backend.subscribe(topic, self._on_push_event, self._on_push_error)
                )
        except BackendUnavailableError as exc:
            for unsub in unsubs:
                unsub()
            logger.warning("Push unavailable for room %s: %s", self.room_code, exc)
            return
        if self._closed:
            for unsub in unsubs:
                unsub()
            return
        self._push_unsubs = unsubs
        self._push_alive = True
        self._last_push = loop.time()

    def _drop_push(self) -> None:
        unsubs, self._push_unsubs = self._push_unsubs, []
        self._push_alive = False
        for unsub in unsubs:
            unsub()

    async def _on_push_event(self, event: BackendEvent) -> None:
        if self._closed:
            return
        self._last_push = asyncio.get_running_loop().time()
        if self.mode == SyncMode.POLLING and self._push_alive:
            self._stop_polling("push activity resumed")
            # Events published while push was silent are only visible to a poll.
            self._catch_up_task = asyncio.get_running_loop().create_task(
                self.poll_once(), name=f"pairroom-sync-catch-up:{self.room_code}"
            )
        if event.action == BackendAction.HEARTBEAT:
            return
        if event.topic == room_topic(self.room_code):
            self._apply_snapshot(event.payload, deleted=event.action == BackendAction.DELETE)
        elif event.topic == messages_topic(self.room_code):
            if event.action != BackendAction.CREATE:
                return
            messages = _parse_messages([event.payload])
            if messages:
                self.ingest(messages[0])

    async def _on_push_error(self, error: Exception) -> None:
        if self._closed:
            return
        logger.warning("Push channel failed for room %s: %s", self.room_code, error)
        self._drop_push()
        self._start_polling("push error")

    async def _watch_push(self) -> None:
        loop = asyncio.get_running_loop()
        timeout = self._stall_timeout
        while not self._closed:
            remaining = self._last_push + timeout - loop.time()
            if remaining > 0:
                await asyncio.sleep(remaining)
                continue
            if self._room_closed:
                return
            if self.mode == SyncMode.PUSH:
                logger.warning(
                    "No push activity for room %s in %.1fs", self.room_code, timeout
                )
                self._start_polling("push stalled")
            await asyncio.sleep(timeout)

    # -- Polling --

    def _start_polling(self, reason: str) -> None:
        self._set_mode(SyncMode.POLLING, reason)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(
                self._poll_loop(), name=f"pairroom-sync-poll:{self.room_code}"
            )

    def _stop_polling(self, reason: str) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None
        self._set_mode(SyncMode.PUSH, reason)

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closed and self.mode == SyncMode.POLLING:
            await self.poll_once()
            if not self._push_alive and loop.time() >= self._next_push_retry:
                await self._connect_push()
            await asyncio.sleep(self._config.poll_interval)

    async def poll_once(self) -> None:
        """Fetch messages after the watermark plus the room snapshot."""
        if not self._breaker.allow_request():
            return
        try:
            with self._telemetry.span(
                SpanKind.SYNC_POLL, "sync.poll", room_code=self.room_code
            ) as span_id:
                records = await self._backend.list_messages(
                    self.room_code, since_id=self.watermark
                )
                snapshot = await self._backend.find_room_record(self.room_code)
                self._telemetry.set_attribute(span_id, Attr.MESSAGE_COUNT, len(records))
        except Exception as exc:
            if not isinstance(exc, BackendUnavailableError):
                logger.exception("Unexpected error polling room %s", self.room_code)
            if self._breaker.record_failure():
                self._connection_lost = True
                logger.error(
                    "Polling room %s failed %d times in a row",
                    self.room_code,
                    self._breaker.failure_count,
                )
                lost = (
                    exc
                    if isinstance(exc, BackendUnavailableError)
                    else BackendUnavailableError(f"polling failed: {exc}")
                )
                self._enqueue("error", lost)
            return
        self._breaker.record_success()
        if self._connection_lost:
            self._connection_lost = False
            logger.info("Polling room %s recovered", self.room_code)
            self._enqueue("error", None)
        self.ingest_batch(_parse_messages(records))
        if snapshot is None:
            self._apply_snapshot({}, deleted=True)
        else:
            self._apply_snapshot(snapshot)

    # -- Merge --

    def ingest(self, message: Message) -> None:
        """Merge one pushed message."""
        if message.id <= self.watermark or message.id in self._pending:
            return
        # Without contiguous ids a gap cannot be detected, so every arrival
        # waits out the reorder window.
        if self._contiguous and message.id == self.watermark + 1:
            self._apply(message)
            self.watermark = message.id
            self._drain_pending()
            return
        self._pending[message.id] = message
        if self._flush_handle is None:
            self._flush_handle = asyncio.get_running_loop().call_later(
                self._config.reorder_window, self._flush_pending
            )

    def ingest_batch(self, messages: list[Message]) -> None:
        """Merge an authoritative page (history or poll)."""
        fresh = {m.id: m for m in messages if m.id > self.watermark}
        if fresh:
            for message in sorted(fresh.values(), key=lambda m: m.sort_key):
                self._apply(message)
            self.watermark = max(fresh)
        for stale in [i for i in self._pending if i <= self.watermark]:
            del self._pending[stale]
        self._drain_pending()

    def _drain_pending(self) -> None:
        while self.watermark + 1 in self._pending:
            message = self._pending.pop(self.watermark + 1)
            self._apply(message)
            self.watermark = message.id
        if not self._pending and self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

    def _flush_pending(self) -> None:
        self._flush_handle = None
        if self._closed or not self._pending:
            return
        logger.debug(
            "Flushing %d out-of-order message(s) for room %s past gap after %d",
            len(self._pending),
            self.room_code,
            self.watermark,
        )
        held, self._pending = self._pending, {}
        for message in sorted(held.values(), key=lambda m: m.sort_key):
            self._apply(message)
        self.watermark = max(self.watermark, max(held))

    def _apply(self, message: Message) -> None:
        self._enqueue("message", message)
        if message.type == MessageType.SYSTEM and isinstance(message.metadata, SystemMetadata):
            meta = message.metadata
            if meta.code == SystemCode.PARTICIPANT_LEFT and meta.user_id is not None:
                self._mark_left(meta.user_id, role=None)

    # -- Presence --

    async def _load_snapshot(self) -> None:
        try:
            record = await self._backend.find_room_record(self.room_code)
        except BackendUnavailableError as exc:
            logger.warning("Could not load room snapshot for %s: %s", self.room_code, exc)
            return
        if self._closed:
            return
        if record is None:
            self._apply_snapshot({}, deleted=True)
        else:
            self._apply_snapshot(record)

    def _apply_snapshot(self, record: dict[str, Any], *, deleted: bool = False) -> None:
        if self._room_closed:
            return
        status = record.get("status")
        if deleted or status in (RoomStatus.CLOSED.value, RoomStatus.EXPIRED.value):
            self._room_closed = True
            self._enqueue(
                "presence",
                PresenceEvent(type=PresenceEventType.ROOM_CLOSED, room_code=self.room_code),
            )
            return
        creator_id = record.get("creator_id")
        joiner_id = record.get("joiner_id")
        if creator_id:
            self._mark_joined(creator_id, ParticipantRole.CREATOR)
        if joiner_id:
            self._mark_joined(joiner_id, ParticipantRole.JOINER)
        for user_id in list(self._present):
            if user_id not in (creator_id, joiner_id):
                self._mark_left(user_id, role=ParticipantRole.JOINER)

    def _mark_joined(self, user_id: str, role: ParticipantRole) -> None:
        if user_id in self._present:
            return
        self._present.add(user_id)
        self._roles[user_id] = role
        self._enqueue(
            "presence",
            PresenceEvent(
                type=PresenceEventType.JOINED,
                room_code=self.room_code,
                participant=ParticipantPresence(user_id=user_id, role=role),
            ),
        )

    def _mark_left(self, user_id: str, role: ParticipantRole | None) -> None:
        if user_id not in self._present:
            return
        self._present.discard(user_id)
        role = self._roles.pop(user_id, role) or ParticipantRole.JOINER
        self._enqueue(
            "presence",
            PresenceEvent(
                type=PresenceEventType.LEFT,
                room_code=self.room_code,
                participant=ParticipantPresence(user_id=user_id, role=role, online=False),
            ),
        )

    # -- Delivery --

    def _enqueue(self, kind: str, item: Any) -> None:
        if self._closed:
            return
        self._outbox.append((kind, item))
        self._wakeup.set()

    async def _deliver(self) -> None:
        while not self._closed:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._outbox and not self._closed:
                kind, item = self._outbox.popleft()
                for handle in list(self.handles):
                    if not handle.active:
                        continue
                    try:
                        if kind == "message":
                            await handle.on_message(item)
                        elif kind == "presence":
                            await handle.on_presence(item)
                        elif handle.on_error is not None:
                            await handle.on_error(item)
                    except Exception:
                        logger.exception(
                            "Sync %s callback failed",
                            kind,
                            extra={"room_code": self.room_code},
                        )


def _stall_timeout(config: PairRoomConfig, backend: BackendService) -> float:
    """Push silence tolerated before polling; covers two backend keep-alives."""
    timeout = config.push_stall_timeout
    keepalive = backend.heartbeat_interval
    if keepalive is not None and keepalive * 2 > timeout:
        logger.warning(
            "%s keep-alive every %.1fs is too slow for push_stall_timeout=%.1fs; "
            "using %.1fs",
            backend.name,
            keepalive,
            timeout,
            keepalive * 2,
        )
        return keepalive * 2
    return timeout


def _parse_messages(records: list[dict[str, Any]]) -> list[Message]:
    messages: list[Message] = []
    for record in records:
        try:
            messages.append(Message.from_record(record))
        except (KeyError, ValueError) as exc:
            logger.warning("Dropping malformed message record %r: %s", record.get("id"), exc)
    messages.sort(key=lambda m: m.sort_key)
    return messages
