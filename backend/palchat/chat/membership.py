"""Room membership changes and their live side effects.

Membership itself lives in the store. When it changes, live connections
of the affected user are subscribed or unsubscribed here, so a removed
member stops receiving the room's events immediately and an added member
starts receiving them without reconnecting.
"""
import logging
from typing import Iterable, Optional

from palchat.errors import Forbidden, MessageValidationError, NotAMember, NotFound
from palchat.store.schemas import ChatRoom, MemberRole, RoomType
from palchat.store.service import StoreClient

from .events import MemberAddedEvent, MemberRemovedEvent, RoleUpdatedEvent
from .lifecycle import ConnectionLifecycleManager
from .subscriptions import RoomRouter
from .typing_indicators import TypingCoordinator

logger = logging.getLogger(__name__)


class MembershipCoordinator:

    def __init__(
        self,
        store: StoreClient,
        router: RoomRouter,
        lifecycle: ConnectionLifecycleManager,
        typing: TypingCoordinator,
    ) -> None:
        self._store = store
        self._router = router
        self._lifecycle = lifecycle
        self._typing = typing

    async def create_room(
        self,
        creator_id: str,
        room_type: RoomType,
        member_ids: Iterable[str] = (),
        name: Optional[str] = None,
    ) -> ChatRoom:
        """Create a room, or return the existing direct room for a pair.

        Raises:
            MessageValidationError: If a direct room does not name exactly one
                other participant.
        """
        others = [uid for uid in dict.fromkeys(member_ids) if uid != creator_id]
        if room_type == RoomType.DIRECT:
            if len(others) != 1:
                raise MessageValidationError("A direct chat needs exactly one other participant")
            existing = await self._store.find_direct_room(creator_id, others[0])
            if existing is not None:
                return existing
            name = None

        room = await self._store.create_room(room_type, creator_id, others, name)
        for user_id in [creator_id] + others:
            self._subscribe_user(user_id, room.id)
        logger.info(f"[Membership] {creator_id} created {room_type.value} room {room.id}")
        return room

    async def add_member(
        self,
        actor_id: str,
        room_id: str,
        user_id: str,
        role: MemberRole = MemberRole.MEMBER,
    ) -> ChatRoom:
        room = await self._store.get_room(room_id)
        self._require_moderator(room, actor_id)
        if role == MemberRole.OWNER:
            raise MessageValidationError("A room has exactly one owner")

        added = await self._store.add_member(room_id, user_id, role)
        if not added:
            raise MessageValidationError(f"User {user_id} is already a member of this room")

        self._subscribe_user(user_id, room_id)
        await self._router.broadcast(
            room_id,
            MemberAddedEvent(roomId=room_id, userId=user_id, role=role, addedBy=actor_id).to_wire(),
        )
        logger.info(f"[Membership] {actor_id} added {user_id} to room {room_id} as {role.value}")
        return await self._store.get_room(room_id)

    async def remove_member(self, actor_id: str, room_id: str, user_id: str) -> ChatRoom:
        """Remove a member, or leave the room when ``actor_id == user_id``.

        The owner can neither be removed nor leave.
        """
        room = await self._store.get_room(room_id)
        roles = room.roles()
        if actor_id != user_id:
            self._require_moderator(room, actor_id)
        elif actor_id not in roles:
            raise NotAMember(f"You are not a member of room {room_id}")
        if user_id not in roles:
            raise NotFound(f"User {user_id} is not a member of room {room_id}")
        if roles[user_id] == MemberRole.OWNER:
            raise Forbidden("The room owner cannot be removed")
        if room.type == RoomType.DIRECT:
            raise Forbidden("Direct chats have a fixed pair of members")

        await self._store.remove_member(room_id, user_id)
        # Announce before unsubscribing so the removed user's devices see it
        await self._router.broadcast(
            room_id,
            MemberRemovedEvent(roomId=room_id, userId=user_id, removedBy=actor_id).to_wire(),
        )
        await self._typing.clear_user(room_id, user_id)
        for connection in self._lifecycle.connections_of(user_id):
            self._router.unsubscribe(connection.id, room_id)
        logger.info(f"[Membership] {actor_id} removed {user_id} from room {room_id}")
        return await self._store.get_room(room_id)

    async def update_role(
        self, actor_id: str, room_id: str, user_id: str, role: MemberRole
    ) -> ChatRoom:
        room = await self._store.get_room(room_id)
        self._require_moderator(room, actor_id)
        roles = room.roles()
        if user_id not in roles:
            raise NotFound(f"User {user_id} is not a member of room {room_id}")
        if role == MemberRole.OWNER or roles[user_id] == MemberRole.OWNER:
            raise Forbidden("Ownership cannot be changed")

        await self._store.update_role(room_id, user_id, role)
        await self._router.broadcast(
            room_id,
            RoleUpdatedEvent(roomId=room_id, userId=user_id, role=role, updatedBy=actor_id).to_wire(),
        )
        return await self._store.get_room(room_id)

    def _require_moderator(self, room: ChatRoom, actor_id: str) -> None:
        roles = room.roles()
        if actor_id not in roles:
            raise NotAMember(f"You are not a member of room {room.id}")
        if room.type == RoomType.DIRECT:
            raise Forbidden("Direct chats have a fixed pair of members")
        if not roles[actor_id].can_moderate:
            raise Forbidden("Only the room owner or an admin can manage members")

    def _subscribe_user(self, user_id: str, room_id: str) -> None:
        for connection in self._lifecycle.connections_of(user_id):
            self._router.subscribe(connection.id, room_id)
