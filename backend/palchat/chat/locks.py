"""Per-key asyncio locks that are dropped once idle.

Rooms and users come and go for the life of the process, so a plain
``defaultdict(asyncio.Lock)`` would keep one lock per key ever seen. Here a
lock lives only while some coroutine holds it or waits for it.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class KeyedLocks:
    """Mutual exclusion per key (room id, user id)."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        # key -> coroutines holding or waiting for the lock
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: str) -> bool:
        return key in self._locks
