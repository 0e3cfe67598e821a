"""Presence tracking with multi-device reference counting.

A user is online while at least one of their connections is authenticated.
The connection count is reference-counted so closing one device never marks
a user offline while another device is still connected.

Broadcast coalescing:
    State changes are applied to the record immediately, so ``query`` always
    reflects the truth. The presence-change notification is deferred by the
    debounce window; when it elapses, the *current* status is announced only
    if it differs from the last announced one. A disconnect followed by a
    reconnect inside the window therefore produces no notification at all.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field

from palchat.store.service import utcnow

from .locks import KeyedLocks

logger = logging.getLogger(__name__)


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class PresenceRecord(BaseModel):
    """Per-user connectivity aggregate.

    Attributes:
        userId: The user this record describes.
        status: Displayed status. Never ``online``/``away`` with zero connections.
        lastSeenAt: When the user's last connection closed.
        activeConnectionCount: Number of live authenticated connections.
    """
    userId: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    lastSeenAt: Optional[datetime] = None
    activeConnectionCount: int = Field(default=0, ge=0)


PresenceListener = Callable[[PresenceRecord], Awaitable[None]]


class PresenceTracker:
    """Authoritative online/away/offline status per user.

    Transitions for one user are serialized by a per-user lock; unrelated
    users never contend.
    """

    def __init__(
        self,
        on_change: Optional[PresenceListener] = None,
        debounce_seconds: float = 0.3,
    ) -> None:
        self._on_change = on_change
        self._debounce = max(debounce_seconds, 0.0)
        self._records: Dict[str, PresenceRecord] = {}
        self._locks = KeyedLocks()
        # user_id -> status most recently announced to rooms
        self._announced: Dict[str, PresenceStatus] = {}
        # user_id -> pending debounce task
        self._pending: Dict[str, asyncio.Task] = {}

    def _record(self, user_id: str) -> PresenceRecord:
        if user_id not in self._records:
            self._records[user_id] = PresenceRecord(userId=user_id)
        return self._records[user_id]

    async def mark_connected(self, user_id: str) -> PresenceStatus:
        """Count a new connection. Connecting always clears ``away``."""
        async with self._locks.hold(user_id):
            record = self._record(user_id)
            record.activeConnectionCount += 1
            if record.activeConnectionCount == 1:
                logger.info(f"[Presence] User {user_id} came online")
            return await self._set_status(record, PresenceStatus.ONLINE)

    async def mark_disconnected(self, user_id: str) -> PresenceStatus:
        """Release a connection. The last one stamps ``lastSeenAt``."""
        async with self._locks.hold(user_id):
            record = self._record(user_id)
            if record.activeConnectionCount == 0:
                return record.status
            record.activeConnectionCount -= 1
            if record.activeConnectionCount > 0:
                logger.debug(
                    f"[Presence] User {user_id} closed a connection "
                    f"({record.activeConnectionCount} remaining)"
                )
                return record.status
            record.lastSeenAt = utcnow()
            logger.info(f"[Presence] User {user_id} went offline")
            return await self._set_status(record, PresenceStatus.OFFLINE)

    async def set_away(self, user_id: str) -> PresenceStatus:
        async with self._locks.hold(user_id):
            record = self._record(user_id)
            if record.activeConnectionCount == 0:
                return record.status
            return await self._set_status(record, PresenceStatus.AWAY)

    async def set_online(self, user_id: str) -> PresenceStatus:
        async with self._locks.hold(user_id):
            record = self._record(user_id)
            if record.activeConnectionCount == 0:
                return record.status
            return await self._set_status(record, PresenceStatus.ONLINE)

    async def touch(self, user_id: str) -> PresenceStatus:
        """Register activity: an ``away`` user becomes ``online`` again."""
        record = self._records.get(user_id)
        if record is None or record.status != PresenceStatus.AWAY:
            return record.status if record else PresenceStatus.OFFLINE
        return await self.set_online(user_id)

    def query(self, user_id: str) -> PresenceRecord:
        """Non-blocking snapshot of a user's presence."""
        record = self._records.get(user_id)
        return record.model_copy() if record else PresenceRecord(userId=user_id)

    def is_online(self, user_id: str) -> bool:
        record = self._records.get(user_id)
        return bool(record and record.activeConnectionCount > 0)

    async def shutdown(self) -> None:
        """Cancel pending notifications (application shutdown)."""
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Internal
    # =========================================================================

    async def _set_status(self, record: PresenceRecord, status: PresenceStatus) -> PresenceStatus:
        """Apply a status and schedule its announcement. Caller holds the user lock."""
        if record.status != status:
            record.status = status
            await self._schedule(record.userId)
        return record.status

    async def _schedule(self, user_id: str) -> None:
        if self._debounce == 0:
            await self._announce(user_id)
            return
        if user_id in self._pending:
            # The pending task announces whatever the state is when it fires
            return
        self._pending[user_id] = asyncio.create_task(self._announce_later(user_id))

    async def _announce_later(self, user_id: str) -> None:
        try:
            await asyncio.sleep(self._debounce)
            async with self._locks.hold(user_id):
                if self._pending.get(user_id) is asyncio.current_task():
                    del self._pending[user_id]
                await self._announce(user_id)
        finally:
            if self._pending.get(user_id) is asyncio.current_task():
                del self._pending[user_id]

    async def _announce(self, user_id: str) -> None:
        record = self._records[user_id]
        if self._announced.get(user_id, PresenceStatus.OFFLINE) == record.status:
            logger.debug(f"[Presence] Coalesced presence churn for user {user_id}")
            return
        self._announced[user_id] = record.status
        if self._on_change is None:
            return
        try:
            await self._on_change(record.model_copy())
        except Exception as e:
            # Presence notifications are best-effort
            logger.warning(f"[Presence] Failed to announce status of {user_id}: {e}")
