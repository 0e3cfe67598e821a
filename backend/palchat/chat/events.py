"""Socket event schemas.

Every event on the wire is a JSON object with a ``type`` tag. Inbound events
form a closed discriminated union so malformed payloads are rejected at the
boundary; outbound events are models with a fixed ``type`` literal.

Inbound (client -> server):
    - authenticate: {token}
    - join_chat / join_chat_room: {roomId}
    - leave_chat: {roomId}
    - send_message: {roomId, content, messageType, mediaUrl?, replyToId?, clientMsgId?}
    - typing_start / typing_stop: {roomId}
    - message_read: {messageId}
    - delete_message: {messageId}
    - edit_message: {messageId, content}
    - update_status: {status: online|away}

Outbound (server -> client):
    authenticated, chat_joined, chat_left, new_message, message_updated,
    message_deleted, user_typing, user_stop_typing, message_read,
    user_status_changed, member_added, member_removed, role_updated, error
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from palchat.errors import MessageValidationError
from palchat.store.schemas import MemberRole, Message, MessageType

from .presence import PresenceStatus

# =============================================================================
# Inbound events
# =============================================================================


class AuthenticateEvent(BaseModel):
    type: Literal["authenticate"]
    token: str = Field(..., min_length=1)


class JoinChatEvent(BaseModel):
    type: Literal["join_chat", "join_chat_room"]
    roomId: str = Field(..., min_length=1)


class LeaveChatEvent(BaseModel):
    type: Literal["leave_chat"]
    roomId: str = Field(..., min_length=1)


class SendMessageEvent(BaseModel):
    type: Literal["send_message"]
    roomId: str = Field(..., min_length=1)
    content: str = Field(default="")
    messageType: MessageType = Field(default=MessageType.TEXT)
    mediaUrl: Optional[str] = None
    replyToId: Optional[str] = None
    clientMsgId: Optional[str] = Field(default=None, max_length=64)


class TypingStartEvent(BaseModel):
    type: Literal["typing_start"]
    roomId: str = Field(..., min_length=1)


class TypingStopEvent(BaseModel):
    type: Literal["typing_stop"]
    roomId: str = Field(..., min_length=1)


class MessageReadEvent(BaseModel):
    type: Literal["message_read"]
    messageId: str = Field(..., min_length=1)


class DeleteMessageEvent(BaseModel):
    type: Literal["delete_message"]
    messageId: str = Field(..., min_length=1)


class EditMessageEvent(BaseModel):
    type: Literal["edit_message"]
    messageId: str = Field(..., min_length=1)
    content: str


class UpdateStatusEvent(BaseModel):
    type: Literal["update_status"]
    status: Literal["online", "away"]


InboundEvent = Annotated[
    Union[
        AuthenticateEvent,
        JoinChatEvent,
        LeaveChatEvent,
        SendMessageEvent,
        TypingStartEvent,
        TypingStopEvent,
        MessageReadEvent,
        DeleteMessageEvent,
        EditMessageEvent,
        UpdateStatusEvent,
    ],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundEvent)


def parse_inbound(payload: object) -> InboundEvent:
    """Validate a decoded JSON payload into one of the inbound event models.

    Raises:
        MessageValidationError: If the payload is not an object, has an
            unknown ``type`` or is missing required fields.
    """
    if not isinstance(payload, dict):
        raise MessageValidationError("Invalid event format: expected a JSON object")
    try:
        return _inbound_adapter.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise MessageValidationError(
            f"Invalid {payload.get('type', 'event')} event: {location} {first.get('msg', '')}".strip(),
            client_msg_id=payload.get("clientMsgId") if isinstance(payload.get("clientMsgId"), str) else None,
        )


# =============================================================================
# Outbound events
# =============================================================================


class OutboundEvent(BaseModel):
    def to_wire(self) -> dict:
        return self.model_dump(mode="json")


class AuthenticatedEvent(OutboundEvent):
    type: Literal["authenticated"] = "authenticated"
    userId: str
    connectionId: str
    rooms: List[str] = Field(default_factory=list)


class ChatJoinedEvent(OutboundEvent):
    type: Literal["chat_joined"] = "chat_joined"
    roomId: str


class ChatLeftEvent(OutboundEvent):
    type: Literal["chat_left"] = "chat_left"
    roomId: str


class NewMessageEvent(OutboundEvent):
    type: Literal["new_message"] = "new_message"
    message: Message


class MessageUpdatedEvent(OutboundEvent):
    type: Literal["message_updated"] = "message_updated"
    message: Message


class MessageDeletedEvent(OutboundEvent):
    type: Literal["message_deleted"] = "message_deleted"
    message: Message


class UserTypingEvent(OutboundEvent):
    type: Literal["user_typing"] = "user_typing"
    roomId: str
    userId: str
    isTyping: Literal[True] = True


class UserStopTypingEvent(OutboundEvent):
    type: Literal["user_stop_typing"] = "user_stop_typing"
    roomId: str
    userId: str
    isTyping: Literal[False] = False


class MessageReadAckEvent(OutboundEvent):
    type: Literal["message_read"] = "message_read"
    messageId: str
    roomId: str
    userId: str
    readAt: datetime
    status: Literal["delivered", "read"]


class UserStatusChangedEvent(OutboundEvent):
    type: Literal["user_status_changed"] = "user_status_changed"
    userId: str
    status: PresenceStatus
    lastSeenAt: Optional[datetime] = None


class MemberAddedEvent(OutboundEvent):
    type: Literal["member_added"] = "member_added"
    roomId: str
    userId: str
    role: MemberRole
    addedBy: str


class MemberRemovedEvent(OutboundEvent):
    type: Literal["member_removed"] = "member_removed"
    roomId: str
    userId: str
    removedBy: str


class RoleUpdatedEvent(OutboundEvent):
    type: Literal["role_updated"] = "role_updated"
    roomId: str
    userId: str
    role: MemberRole
    updatedBy: str
