"""Room membership REST API router.

Endpoints:
    POST   /rooms                              - Create a direct or group room
    GET    /rooms/{room_id}                    - Get a room and its members
    POST   /rooms/{room_id}/members            - Add a member
    DELETE /rooms/{room_id}/members/{user_id}  - Remove a member (or leave)
    PUT    /rooms/{room_id}/members/{user_id}/role - Change a member's role

Membership changes take effect on live connections immediately.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from palchat.errors import NotAMember
from palchat.store.schemas import ChatRoom, MemberRole, RoomType

from .dependencies import current_user, get_hub
from .hub import ChatHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])


class CreateRoomRequest(BaseModel):
    """Request model for creating a room."""
    type: RoomType = RoomType.GROUP
    name: Optional[str] = Field(default=None, max_length=100)
    memberIds: List[str] = Field(default_factory=list)


class AddMemberRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    role: MemberRole = MemberRole.MEMBER


class UpdateRoleRequest(BaseModel):
    role: MemberRole


@router.post("/rooms", response_model=ChatRoom, status_code=201)
async def create_room(
    request: CreateRoomRequest,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> ChatRoom:
    """Create a room with the caller as creator.

    Creating a direct room for a pair that already has one returns the
    existing room.
    """
    return await hub.membership.create_room(user_id, request.type, request.memberIds, request.name)


@router.get("/rooms/{room_id}", response_model=ChatRoom)
async def get_room(
    room_id: str,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> ChatRoom:
    room = await hub.store.get_room(room_id)
    if user_id not in room.roles():
        raise NotAMember(f"You are not a member of room {room_id}")
    return room


@router.post("/rooms/{room_id}/members", response_model=ChatRoom)
async def add_member(
    room_id: str,
    request: AddMemberRequest,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> ChatRoom:
    return await hub.membership.add_member(user_id, room_id, request.userId, request.role)


@router.delete("/rooms/{room_id}/members/{member_id}", response_model=ChatRoom)
async def remove_member(
    room_id: str,
    member_id: str,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> ChatRoom:
    return await hub.membership.remove_member(user_id, room_id, member_id)


@router.put("/rooms/{room_id}/members/{member_id}/role", response_model=ChatRoom)
async def update_member_role(
    room_id: str,
    member_id: str,
    request: UpdateRoleRequest,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> ChatRoom:
    room = await hub.membership.update_role(user_id, room_id, member_id, request.role)
    logger.info(f"Updated role of {member_id} in room {room_id} to {request.role.value}")
    return room
