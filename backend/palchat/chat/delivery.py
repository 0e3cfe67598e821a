"""Message delivery pipeline.

Accepts a message, persists it, then fans it out to the room. Persisting and
fanning out happen under a per-room lock, so every subscriber observes a
room's messages in the same order the store assigned (``seq``). Nothing is
broadcast unless the store write succeeded.

Read receipts, soft deletes and edits go through the same pipeline so the
room sees a single, consistent stream of message events.
"""
import logging
from typing import Dict, Optional

from palchat.errors import (
    ChatError,
    Forbidden,
    MessageValidationError,
    NotAMember,
    Unauthorized,
)
from palchat.store.schemas import MemberRole, Message, MessageType, RoomType
from palchat.store.service import StoreClient, utcnow

from .connection import Connection
from .events import (
    MessageDeletedEvent,
    MessageReadAckEvent,
    MessageUpdatedEvent,
    NewMessageEvent,
)
from .locks import KeyedLocks
from .presence import PresenceTracker
from .subscriptions import RoomRouter

logger = logging.getLogger(__name__)


def _user_of(connection: Connection) -> str:
    if not connection.is_authenticated or not connection.user_id:
        raise Unauthorized("Authenticate before sending chat events")
    return connection.user_id


class MessagePipeline:
    """Validate, persist and fan out chat messages.

    Attributes:
        _room_locks: room_id -> lock held across a store write and its broadcast.
    """

    def __init__(
        self,
        store: StoreClient,
        router: RoomRouter,
        presence: PresenceTracker,
        max_content_length: int = 10000,
    ) -> None:
        self._store = store
        self._router = router
        self._presence = presence
        self._max_content_length = max_content_length
        self._room_locks = KeyedLocks()

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(
        self,
        connection: Connection,
        room_id: str,
        content: str,
        type_: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
        media_url: Optional[str] = None,
        client_msg_id: Optional[str] = None,
    ) -> Message:
        """Send a message from a live connection.

        On a duplicate ``client_msg_id`` the stored message is re-sent to the
        requesting connection only; the room does not see it twice.
        """
        try:
            sender_id = _user_of(connection)
        except ChatError as exc:
            exc.client_msg_id = client_msg_id
            raise
        return await self._send(
            sender_id, room_id, content, type_, reply_to_id, media_url,
            client_msg_id, origin=connection,
        )

    async def send_as_user(
        self,
        user_id: str,
        room_id: str,
        content: str,
        type_: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
        media_url: Optional[str] = None,
        client_msg_id: Optional[str] = None,
    ) -> Message:
        """Send a message on behalf of a user with no live connection (REST)."""
        return await self._send(
            user_id, room_id, content, type_, reply_to_id, media_url,
            client_msg_id, origin=None,
        )

    async def _send(
        self,
        sender_id: str,
        room_id: str,
        content: str,
        type_: MessageType,
        reply_to_id: Optional[str],
        media_url: Optional[str],
        client_msg_id: Optional[str],
        origin: Optional[Connection],
    ) -> Message:
        try:
            await self._require_member(room_id, sender_id)
            content = self._validate_content(type_, content, media_url)
            if reply_to_id:
                target = await self._store.get_message(reply_to_id)
                if target.roomId != room_id:
                    raise MessageValidationError("Replies must reference a message in the same room")

            async with self._room_locks.hold(room_id):
                message, created = await self._store.create_message(
                    room_id, sender_id, content, type_,
                    reply_to_id=reply_to_id, media_url=media_url,
                    client_msg_id=client_msg_id,
                )
                if created:
                    delivered = await self._router.broadcast(
                        room_id, NewMessageEvent(message=message).to_wire()
                    )
        except ChatError as exc:
            if exc.client_msg_id is None:
                exc.client_msg_id = client_msg_id
            raise

        if created:
            logger.info(
                f"[Pipeline] Message {message.id} (seq={message.seq}) from {sender_id} "
                f"in room {room_id} delivered to {delivered} connections"
            )
        else:
            logger.info(f"[Pipeline] Duplicate clientMsgId {client_msg_id} in room {room_id}")
            if origin is not None:
                await self._router.send_to(origin.id, NewMessageEvent(message=message).to_wire())

        await self._presence.touch(sender_id)
        return message

    def _validate_content(
        self, type_: MessageType, content: Optional[str], media_url: Optional[str]
    ) -> str:
        content = content or ""
        if type_ == MessageType.SYSTEM:
            raise MessageValidationError("System messages cannot be sent by clients")
        if type_ == MessageType.TEXT:
            content = content.strip()
            if not content:
                raise MessageValidationError("Message content cannot be empty")
        elif type_.is_media and not (media_url and media_url.strip()):
            raise MessageValidationError(f"A {type_.value} message requires a mediaUrl")
        if len(content) > self._max_content_length:
            raise MessageValidationError(
                f"Message content exceeds {self._max_content_length} characters"
            )
        return content

    # =========================================================================
    # Read receipts
    # =========================================================================

    async def mark_read(self, connection: Connection, message_id: str) -> bool:
        return await self.mark_read_as_user(_user_of(connection), message_id)

    async def mark_read_as_user(self, user_id: str, message_id: str) -> bool:
        """Record a read receipt and announce it to the room.

        Reading your own message, or a message you already read, changes
        nothing and announces nothing.

        Returns:
            True if a new receipt was recorded.
        """
        message = await self._store.get_message(message_id)
        roles = await self._require_member(message.roomId, user_id)
        if message.senderId == user_id:
            return False

        read_at = utcnow()
        async with self._room_locks.hold(message.roomId):
            added = await self._store.append_read_receipt(message_id, user_id, read_at)
            if not added:
                return False

            # Readers as stored now, including receipts written by other tasks
            readers = (await self._store.get_message(message_id)).read_by_ids()
            recipients = set(roles) - {message.senderId}
            status = "read" if recipients <= readers else "delivered"
            await self._router.broadcast(
                message.roomId,
                MessageReadAckEvent(
                    messageId=message_id,
                    roomId=message.roomId,
                    userId=user_id,
                    readAt=read_at,
                    status=status,
                ).to_wire(),
            )
        await self._presence.touch(user_id)
        logger.debug(f"[Pipeline] {user_id} read message {message_id} ({status})")
        return True

    # =========================================================================
    # Deletes and edits
    # =========================================================================

    async def delete(self, connection: Connection, message_id: str) -> Message:
        return await self.delete_as_user(_user_of(connection), message_id)

    async def delete_as_user(self, user_id: str, message_id: str) -> Message:
        """Soft-delete a message.

        The sender may always delete their own message; in group rooms an
        owner or admin may delete anyone's. Deleting twice is a no-op.
        """
        message = await self._store.get_message(message_id)
        room = await self._store.get_room(message.roomId)
        roles = room.roles()
        if user_id not in roles:
            raise NotAMember(f"You are not a member of room {room.id}")
        if message.deleted:
            return message

        role = roles[user_id]
        moderator = room.type == RoomType.GROUP and role.can_moderate
        if message.senderId != user_id and not moderator:
            raise Forbidden("Only the sender or a room admin can delete this message")

        async with self._room_locks.hold(room.id):
            current = await self._store.get_message(message_id)
            if current.deleted:
                return current
            deleted = await self._store.soft_delete_message(message_id, user_id, utcnow())
            await self._router.broadcast(room.id, MessageDeletedEvent(message=deleted).to_wire())
        logger.info(f"[Pipeline] Message {message_id} deleted by {user_id} ({role.value})")
        return deleted

    async def edit(self, connection: Connection, message_id: str, content: str) -> Message:
        return await self.edit_as_user(_user_of(connection), message_id, content)

    async def edit_as_user(self, user_id: str, message_id: str, content: str) -> Message:
        message = await self._store.get_message(message_id)
        await self._require_member(message.roomId, user_id)
        if message.senderId != user_id:
            raise Forbidden("Only the sender can edit this message")
        if message.deleted:
            raise MessageValidationError("Deleted messages cannot be edited")
        if message.type != MessageType.TEXT:
            raise MessageValidationError("Only text messages can be edited")
        content = self._validate_content(MessageType.TEXT, content, None)

        async with self._room_locks.hold(message.roomId):
            edited = await self._store.edit_message(message_id, content, utcnow())
            await self._router.broadcast(
                message.roomId, MessageUpdatedEvent(message=edited).to_wire()
            )
        await self._presence.touch(user_id)
        return edited

    # =========================================================================
    # Internal
    # =========================================================================

    async def _require_member(self, room_id: str, user_id: str) -> Dict[str, MemberRole]:
        roles = await self._store.get_room_membership(room_id)
        if user_id not in roles:
            raise NotAMember(f"You are not a member of room {room_id}")
        return roles
