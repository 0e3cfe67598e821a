"""Room subscription routing.

Maps rooms to the live connections subscribed to them, and each connection
to the rooms it is subscribed to. Both maps are kept consistent: a
connection appears in a room's set if and only if the room appears in the
connection's set.

Features:
    - Concurrent fan-out with asyncio.gather()
    - Failed sends are swallowed; the dead connection's subscriptions are
      dropped and its own disconnect handler does the rest
    - Cross-room fan-out that delivers once per connection

Thread Safety:
    Designed for a single event loop. Mutations contain no awaits, so each
    one is atomic with respect to other coroutines.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from .connection import Connection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomSubscription:
    connection_id: str
    room_id: str


class RoomRouter:
    """Subscription index and fan-out for room-scoped events.

    Attributes:
        _connections: connection_id -> Connection for every open connection.
        _room_members: room_id -> connection IDs subscribed to the room.
        _connection_rooms: connection_id -> room IDs it is subscribed to.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._room_members: Dict[str, Set[str]] = {}
        self._connection_rooms: Dict[str, Set[str]] = {}

    # =========================================================================
    # Connection registry
    # =========================================================================

    def register(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        self._connection_rooms.setdefault(connection.id, set())

    def unregister(self, connection_id: str) -> Set[str]:
        """Forget a connection and every subscription it held.

        Returns:
            The room IDs the connection was subscribed to.
        """
        rooms = self.unsubscribe_all(connection_id)
        self._connections.pop(connection_id, None)
        self._connection_rooms.pop(connection_id, None)
        return rooms

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, connection_id: str, room_id: str) -> bool:
        """Subscribe a registered connection to a room.

        Membership must already have been checked by the caller.

        Returns:
            True if a new subscription was created, False if it already
            existed or the connection is no longer registered.
        """
        if connection_id not in self._connections:
            return False
        rooms = self._connection_rooms.setdefault(connection_id, set())
        if room_id in rooms:
            return False
        rooms.add(room_id)
        self._room_members.setdefault(room_id, set()).add(connection_id)
        logger.debug(f"[Router] {connection_id} subscribed to room {room_id}")
        return True

    def unsubscribe(self, connection_id: str, room_id: str) -> bool:
        rooms = self._connection_rooms.get(connection_id)
        if not rooms or room_id not in rooms:
            return False
        rooms.discard(room_id)
        members = self._room_members.get(room_id)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._room_members[room_id]
        logger.debug(f"[Router] {connection_id} unsubscribed from room {room_id}")
        return True

    def unsubscribe_all(self, connection_id: str) -> Set[str]:
        rooms = set(self._connection_rooms.get(connection_id, ()))
        for room_id in rooms:
            self.unsubscribe(connection_id, room_id)
        return rooms

    def members_of(self, room_id: str) -> Set[str]:
        return set(self._room_members.get(room_id, ()))

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._connection_rooms.get(connection_id, ()))

    def is_subscribed(self, connection_id: str, room_id: str) -> bool:
        return room_id in self._connection_rooms.get(connection_id, ())

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(
        self, room_id: str, payload: dict, exclude: Optional[str] = None
    ) -> int:
        """Send an event to every connection subscribed to a room.

        Args:
            room_id: Room to broadcast to.
            payload: JSON-serializable event.
            exclude: Connection ID to skip (e.g. the typist).

        Returns:
            Number of connections the event was delivered to.
        """
        targets = [cid for cid in self.members_of(room_id) if cid != exclude]
        return await self._fan_out(targets, payload)

    async def broadcast_to_rooms(
        self, room_ids: Iterable[str], payload: dict, exclude: Optional[str] = None
    ) -> int:
        """Send one copy of an event to every connection in any of the rooms."""
        targets: Set[str] = set()
        for room_id in room_ids:
            targets |= self.members_of(room_id)
        targets.discard(exclude)
        return await self._fan_out(list(targets), payload)

    async def send_to(self, connection_id: str, payload: dict) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return await self._safe_send(connection, payload)

    async def _fan_out(self, connection_ids: List[str], payload: dict) -> int:
        connections = [
            self._connections[cid] for cid in connection_ids if cid in self._connections
        ]
        if not connections:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(conn, payload) for conn in connections],
            return_exceptions=True
        )

        # Drop subscriptions of connections that failed
        failed = [conn for conn, ok in zip(connections, results) if ok is not True]
        for conn in failed:
            dropped = self.unsubscribe_all(conn.id)
            logger.info(f"[Router] Dropped {len(dropped)} subscriptions of dead connection {conn.id}")
        return len(connections) - len(failed)

    async def _safe_send(self, connection: Connection, payload: dict) -> bool:
        try:
            await connection.send(payload)
            return True
        except Exception as e:
            logger.warning(f"[Router] Failed to send to connection {connection.id}: {e}")
            return False
