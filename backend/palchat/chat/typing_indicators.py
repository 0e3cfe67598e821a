"""Typing indicators with a server-side expiry.

One indicator exists per (room, user). Starting again refreshes its timer
without re-announcing; the indicator ends exactly once, either by an
explicit stop, by the timer, or by the typist disconnecting.
"""
import asyncio
import logging
from typing import Dict, Optional, Tuple

from palchat.errors import NotAMember, Unauthorized

from .connection import Connection
from .events import UserStopTypingEvent, UserTypingEvent
from .subscriptions import RoomRouter

logger = logging.getLogger(__name__)

TypingKey = Tuple[str, str]  # (room_id, user_id)


class TypingCoordinator:

    def __init__(self, router: RoomRouter, timeout_seconds: float = 3.0) -> None:
        self._router = router
        self._timeout = timeout_seconds
        self._timers: Dict[TypingKey, asyncio.Task] = {}
        # Connection that started each indicator; excluded from its broadcasts
        self._owners: Dict[TypingKey, str] = {}

    def is_typing(self, room_id: str, user_id: str) -> bool:
        return (room_id, user_id) in self._timers

    async def start_typing(self, connection: Connection, room_id: str) -> bool:
        """Begin or refresh an indicator.

        Returns:
            True if the indicator was newly started and announced.

        Raises:
            Unauthorized: If the connection has not authenticated.
            NotAMember: If the connection is not subscribed to the room.
        """
        if not connection.is_authenticated:
            raise Unauthorized("Authenticate before typing")
        if not self._router.is_subscribed(connection.id, room_id):
            raise NotAMember(f"Join room {room_id} before typing in it")

        key = (room_id, connection.user_id)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._owners[key] = connection.id
        self._timers[key] = asyncio.create_task(self._expire(key))
        if existing is not None:
            return False

        await self._router.broadcast(
            room_id,
            UserTypingEvent(roomId=room_id, userId=connection.user_id).to_wire(),
            exclude=connection.id,
        )
        return True

    async def stop_typing(self, connection: Connection, room_id: str) -> bool:
        """End an indicator. Stopping when not typing is a no-op."""
        if not connection.is_authenticated:
            raise Unauthorized("Authenticate before typing")
        return await self._end((room_id, connection.user_id), reason="stop")

    async def clear_user(self, room_id: str, user_id: str) -> bool:
        return await self._end((room_id, user_id), reason="cleared")

    async def clear_connection(self, connection: Connection) -> int:
        """End every indicator started from a connection (on disconnect)."""
        keys = [key for key, owner in self._owners.items() if owner == connection.id]
        ended = 0
        for key in keys:
            if await self._end(key, reason="disconnect"):
                ended += 1
        return ended

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        self._owners.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _end(self, key: TypingKey, reason: str) -> bool:
        task = self._timers.pop(key, None)
        if task is None:
            return False
        task.cancel()
        await self._announce_stop(key, self._owners.pop(key, None), reason)
        return True

    async def _expire(self, key: TypingKey) -> None:
        await asyncio.sleep(self._timeout)
        if self._timers.get(key) is not asyncio.current_task():
            return
        del self._timers[key]
        await self._announce_stop(key, self._owners.pop(key, None), reason="timeout")

    async def _announce_stop(self, key: TypingKey, exclude: Optional[str], reason: str) -> None:
        room_id, user_id = key
        logger.debug(f"[Typing] {user_id} stopped typing in {room_id} ({reason})")
        await self._router.broadcast(
            room_id,
            UserStopTypingEvent(roomId=room_id, userId=user_id).to_wire(),
            exclude=exclude,
        )
