"""Pydantic schemas for persisted chat entities.

These models are returned by ``ChatStore`` and serialized as-is into
socket events and REST responses, so field names follow the camelCase
wire format used by the clients.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

# Displayed in place of the content of a soft-deleted message
TOMBSTONE_TEXT = "This message was deleted"


class RoomType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MemberRole(str, Enum):
    """Role of a member in a chat room.

    Attributes:
        OWNER: Creator of a group room; can do everything an admin can.
        ADMIN: Can manage members and delete other members' messages.
        MEMBER: Regular participant.
    """
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def can_moderate(self) -> bool:
        return self in (MemberRole.OWNER, MemberRole.ADMIN)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"
    SYSTEM = "system"

    @property
    def is_media(self) -> bool:
        return self in (MessageType.IMAGE, MessageType.VIDEO, MessageType.AUDIO, MessageType.FILE)


class ReadReceipt(BaseModel):
    userId: str
    readAt: datetime


class Message(BaseModel):
    """A persisted chat message.

    ``seq`` is assigned by the store and defines the authoritative order of
    messages within a room. Deleted messages keep their id, room, reply
    reference and receipts; only the displayed content is replaced.
    """
    id: str = Field(..., description="Server-assigned message ID")
    roomId: str = Field(..., description="Room this message belongs to")
    senderId: str = Field(..., description="User ID of the sender")
    content: str = Field(default="", description="Text content or caption")
    type: MessageType = Field(default=MessageType.TEXT)
    mediaUrl: Optional[str] = Field(default=None, description="Uploaded media reference")
    replyToId: Optional[str] = Field(default=None)
    clientMsgId: Optional[str] = Field(
        default=None,
        description="Client-generated key echoed back for optimistic reconciliation"
    )
    createdAt: datetime
    seq: int
    editedAt: Optional[datetime] = None
    readBy: List[ReadReceipt] = Field(default_factory=list)
    deleted: bool = False
    deletedAt: Optional[datetime] = None
    deletedBy: Optional[str] = None

    def read_by_ids(self) -> set:
        return {receipt.userId for receipt in self.readBy}


class RoomMember(BaseModel):
    userId: str
    role: MemberRole = MemberRole.MEMBER
    joinedAt: datetime


class ChatRoom(BaseModel):
    id: str
    type: RoomType
    name: Optional[str] = None
    createdBy: str
    createdAt: datetime
    lastActivity: Optional[datetime] = None
    lastMessageId: Optional[str] = None
    members: List[RoomMember] = Field(default_factory=list)

    def roles(self) -> Dict[str, MemberRole]:
        return {member.userId: member.role for member in self.members}
