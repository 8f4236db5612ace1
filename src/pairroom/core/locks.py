"""Per-room asyncio locks used around joiner-slot and status transitions."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field


class RoomLockManager(ABC):
    """Serializes writers on one room key (an invite code or a record id).

    The registry holds the lock across the read-check-write of the joiner
    slot and of status changes. Locks only arbitrate within one process;
    across processes the backend's conditional write decides.
    """

    @abstractmethod
    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for *key* for the duration of the block."""
        yield  # pragma: no cover


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0

    @property
    def idle(self) -> bool:
        return self.users == 0 and not self.lock.locked()


class InMemoryLockManager(RoomLockManager):
    """Single-process lock table bounded to *max_locks* idle entries.

    Least recently used idle entries are dropped first. An entry that is
    held or awaited is kept, so the table may briefly grow past the bound.
    """

    def __init__(self, max_locks: int = 1024) -> None:
        self._table: OrderedDict[str, _KeyLock] = OrderedDict()
        self._max_locks = max_locks

    @property
    def size(self) -> int:
        return len(self._table)

    def __contains__(self, key: str) -> bool:
        return key in self._table

    def _checkout(self, key: str) -> _KeyLock:
        entry = self._table.get(key)
        if entry is None:
            entry = self._table[key] = _KeyLock()
        else:
            self._table.move_to_end(key)
        entry.users += 1
        self._shrink()
        return entry

    def _shrink(self) -> None:
        excess = len(self._table) - self._max_locks
        if excess <= 0:
            return
        for key in [k for k, e in self._table.items() if e.idle][:excess]:
            del self._table[key]

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[None]:
        entry = self._checkout(key)
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
