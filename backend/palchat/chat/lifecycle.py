"""Connection lifecycle: handshake, room joins and teardown.

A connection must authenticate within the handshake window or it is closed
with code 4001. On success it is auto-subscribed to every room the user
belongs to and counted towards the user's presence. Teardown is idempotent;
it runs whether the client went away, the handshake failed or the
transport died mid-send.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set

from palchat.auth.service import TokenVerifier
from palchat.errors import MessageValidationError, NotAMember, Unauthorized
from palchat.store.service import StoreClient

from .connection import CLOSE_UNAUTHORIZED, Connection, ConnectionState, Transport
from .events import AuthenticatedEvent, ChatJoinedEvent, ChatLeftEvent
from .presence import PresenceStatus, PresenceTracker
from .subscriptions import RoomRouter, RoomSubscription
from .typing_indicators import TypingCoordinator

logger = logging.getLogger(__name__)


class ConnectionLifecycleManager:
    """Owns every live connection from accept to teardown.

    Attributes:
        _user_connections: user_id -> IDs of that user's authenticated connections.
        _handshake_timers: connection_id -> task closing the connection if it
            has not authenticated in time.
    """

    def __init__(
        self,
        store: StoreClient,
        router: RoomRouter,
        presence: PresenceTracker,
        typing: TypingCoordinator,
        verifier: TokenVerifier,
        handshake_timeout_seconds: float = 15.0,
    ) -> None:
        self._store = store
        self._router = router
        self._presence = presence
        self._typing = typing
        self._verifier = verifier
        self._handshake_timeout = handshake_timeout_seconds
        self._user_connections: Dict[str, Set[str]] = defaultdict(set)
        self._handshake_timers: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Handshake
    # =========================================================================

    def open(self, transport: Transport, connection_id: Optional[str] = None) -> Connection:
        """Track an accepted transport and start its handshake deadline."""
        connection = Connection(transport, connection_id)
        self._router.register(connection)
        self._handshake_timers[connection.id] = asyncio.create_task(
            self._handshake_deadline(connection)
        )
        logger.info(f"[Lifecycle] Connection {connection.id} opened")
        return connection

    async def _handshake_deadline(self, connection: Connection) -> None:
        await asyncio.sleep(self._handshake_timeout)
        if connection.state != ConnectionState.CONNECTING:
            return
        self._handshake_timers.pop(connection.id, None)
        logger.warning(
            f"[Lifecycle] Connection {connection.id} did not authenticate within "
            f"{self._handshake_timeout}s, closing"
        )
        await self._router.send_to(
            connection.id, Unauthorized("Authentication timed out").to_payload("authenticate")
        )
        await connection.close(code=CLOSE_UNAUTHORIZED)
        await self.on_disconnect(connection)

    async def authenticate(self, connection: Connection, token: str) -> str:
        """Bind a user to the connection and subscribe it to the user's rooms.

        On a rejected token the error is sent, the connection is closed with
        4001 and torn down before ``Unauthorized`` propagates.

        Returns:
            The authenticated user ID.
        """
        if connection.state == ConnectionState.DISCONNECTED:
            raise Unauthorized("Connection is closed")
        if connection.state == ConnectionState.AUTHENTICATED:
            raise MessageValidationError("Connection is already authenticated")

        try:
            user_id = self._verifier.verify(token)
        except Unauthorized as exc:
            logger.warning(f"[Lifecycle] Connection {connection.id} failed authentication: {exc.message}")
            await self._router.send_to(connection.id, exc.to_payload("authenticate"))
            await connection.close(code=CLOSE_UNAUTHORIZED)
            await self.on_disconnect(connection)
            raise

        self._cancel_handshake_timer(connection.id)
        connection.user_id = user_id
        connection.state = ConnectionState.AUTHENTICATED
        self._user_connections[user_id].add(connection.id)
        await self._presence.mark_connected(user_id)

        room_ids = await self._store.rooms_for_user(user_id)
        if connection.state != ConnectionState.AUTHENTICATED:
            # Torn down while the store was being read
            return user_id
        for room_id in room_ids:
            self._router.subscribe(connection.id, room_id)

        await connection.send(
            AuthenticatedEvent(userId=user_id, connectionId=connection.id, rooms=room_ids).to_wire()
        )
        logger.info(
            f"[Lifecycle] Connection {connection.id} authenticated as {user_id}, "
            f"subscribed to {len(room_ids)} rooms"
        )
        return user_id

    # =========================================================================
    # Rooms
    # =========================================================================

    async def join_room(self, connection: Connection, room_id: str) -> RoomSubscription:
        """Subscribe to a room after checking membership. Joining twice is a no-op."""
        user_id = self._require_user(connection)
        roles = await self._store.get_room_membership(room_id)
        if user_id not in roles:
            raise NotAMember(f"You are not a member of room {room_id}")

        created = self._router.subscribe(connection.id, room_id)
        await connection.send(ChatJoinedEvent(roomId=room_id).to_wire())
        if created:
            logger.info(f"[Lifecycle] {user_id} joined room {room_id} on {connection.id}")
        return RoomSubscription(connection_id=connection.id, room_id=room_id)

    async def leave_room(self, connection: Connection, room_id: str) -> bool:
        """Unsubscribe from a room without affecting membership."""
        user_id = self._require_user(connection)
        removed = self._router.unsubscribe(connection.id, room_id)
        if removed and self._typing.is_typing(room_id, user_id):
            await self._typing.clear_user(room_id, user_id)
        await connection.send(ChatLeftEvent(roomId=room_id).to_wire())
        return removed

    async def set_status(self, connection: Connection, status: str) -> PresenceStatus:
        user_id = self._require_user(connection)
        if status == PresenceStatus.AWAY.value:
            return await self._presence.set_away(user_id)
        return await self._presence.set_online(user_id)

    # =========================================================================
    # Teardown
    # =========================================================================

    async def on_disconnect(self, connection: Connection) -> None:
        """Tear a connection down. Safe to call more than once."""
        if connection.state == ConnectionState.DISCONNECTED:
            return
        was_authenticated = connection.state == ConnectionState.AUTHENTICATED
        connection.state = ConnectionState.DISCONNECTED
        self._cancel_handshake_timer(connection.id)

        if was_authenticated:
            await self._typing.clear_connection(connection)
        rooms = self._router.unregister(connection.id)

        if was_authenticated and connection.user_id:
            connections = self._user_connections.get(connection.user_id)
            if connections is not None:
                connections.discard(connection.id)
                if not connections:
                    del self._user_connections[connection.user_id]
            await self._presence.mark_disconnected(connection.user_id)

        logger.info(
            f"[Lifecycle] Connection {connection.id} closed "
            f"(user={connection.user_id}, rooms={len(rooms)})"
        )

    async def shutdown(self) -> None:
        timers = list(self._handshake_timers.values())
        self._handshake_timers.clear()
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    # =========================================================================
    # Queries
    # =========================================================================

    def connections_of(self, user_id: str) -> List[Connection]:
        connections = []
        for connection_id in self._user_connections.get(user_id, ()):
            connection = self._router.get(connection_id)
            if connection is not None:
                connections.append(connection)
        return connections

    def connection_count(self) -> int:
        return sum(len(ids) for ids in self._user_connections.values())

    def _require_user(self, connection: Connection) -> str:
        if not connection.is_authenticated or not connection.user_id:
            raise Unauthorized("Authenticate before sending chat events")
        return connection.user_id

    def _cancel_handshake_timer(self, connection_id: str) -> None:
        task = self._handshake_timers.pop(connection_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
