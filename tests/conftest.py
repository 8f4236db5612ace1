"""Shared test fixtures and helpers."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

import pytest

from pairroom.backend.memory import InMemoryBackend
from pairroom.config import PairRoomConfig
from pairroom.core.registry import RoomRegistry
from pairroom.models.enums import MessageType
from pairroom.models.message import Message


@pytest.fixture
def advance() -> Callable[[int], Coroutine[Any, Any, None]]:
    """Yield control to let pending tasks run without real delay.

    Push delivery and sync callbacks run on background tasks::

        await advance()       # 5 yields (default)
        await advance(20)     # more yields for chained deliveries
    """

    async def _advance(n: int = 5) -> None:
        for _ in range(n):
            await asyncio.sleep(0)

    return _advance


@pytest.fixture
def wait_until() -> Callable[..., Coroutine[Any, Any, None]]:
    """Poll *predicate* until it holds, failing after *timeout* seconds."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait_until


@pytest.fixture
def config() -> PairRoomConfig:
    """Config with timings shrunk so fallback and timeout paths run fast."""
    return PairRoomConfig(
        poll_interval=0.01,
        push_stall_timeout=0.2,
        reorder_window=0.05,
        poll_recovery_timeout=0.05,
        join_timeout=1.0,
        media_timeout=0.5,
        call_timeout=5.0,
    )


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def registry(backend: InMemoryBackend, config: PairRoomConfig) -> RoomRegistry:
    return RoomRegistry(backend, config)


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Build a message without going through a backend."""

    def _make(
        id: int,
        *,
        room_code: str = "A1B2C3",
        sender_id: str = "alice",
        content: str | None = None,
        timestamp: datetime | None = None,
        **kwargs: Any,
    ) -> Message:
        return Message(
            id=id,
            room_code=room_code,
            sender_id=sender_id,
            type=kwargs.pop("type", MessageType.TEXT),
            content=content if content is not None else f"message {id}",
            timestamp=timestamp or datetime.now(UTC),
            **kwargs,
        )

    return _make
