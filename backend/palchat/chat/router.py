"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Realtime chat connection for one client
    - POST /chatroom/messages/send: Send a message without a live socket
    - GET /chatroom/{room_id}/messages: Paginated message history
    - POST /chatroom/messages/{message_id}/read: Mark a message as read
    - DELETE /chatroom/messages/{message_id}: Soft-delete a message
    - GET /presence/{user_id}: Current presence of a user

The WebSocket protocol:
    1. Client connects, optionally with ``?token=`` to authenticate at once
    2. Otherwise the first event must be {type: "authenticate", token}
       → Server sends: {type: "authenticated", userId, connectionId, rooms}
       A bad or missing token within the handshake window closes with 4001
    3. Client sends join_chat, leave_chat, send_message, typing_start,
       typing_stop, message_read, delete_message, edit_message, update_status
    4. Failures are answered with {type: "error", code, error, retryable}
       sent to the requesting client only

Messages sent over REST fan out to live subscribers exactly like messages
sent over the socket.
"""
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from palchat.errors import MessageValidationError, NotAMember
from palchat.store.schemas import Message, MessageType

from .connection import Connection, ConnectionState
from .dependencies import current_user, get_hub
from .hub import ChatHub
from .presence import PresenceRecord

logger = logging.getLogger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    roomId: str = Field(..., min_length=1)
    content: str = ""
    messageType: MessageType = MessageType.TEXT
    mediaUrl: Optional[str] = None
    replyToId: Optional[str] = None
    clientMsgId: Optional[str] = Field(default=None, max_length=64)


class MessagePage(BaseModel):
    messages: List[Message]
    page: int
    pageSize: int
    hasMore: bool


class ReadResponse(BaseModel):
    messageId: str
    read: bool


# =============================================================================
# WebSocket
# =============================================================================


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Credential token for an immediate handshake"),
) -> None:
    """WebSocket endpoint for one client's realtime session.

    The connection is tracked from accept until the loop exits; teardown
    always runs, whether the client closed, the handshake failed or a send
    to this client raised.
    """
    hub: ChatHub = websocket.app.state.hub
    await websocket.accept()
    connection = hub.lifecycle.open(websocket)
    logger.info(f"[WS] Connection accepted: {connection.id}")

    try:
        if token:
            await hub.dispatch(connection, {"type": "authenticate", "token": token})

        while connection.state != ConnectionState.DISCONNECTED:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            text = message.get("text")
            if text is None:
                await _reject_frame(hub, connection, "Binary frames are not supported")
                continue
            try:
                data = json.loads(text)
            except ValueError:
                await _reject_frame(hub, connection, "Invalid JSON")
                continue
            logger.debug("[WS] %s received: type=%s", connection.id,
                         data.get("type", "?") if isinstance(data, dict) else "?")
            await hub.dispatch(connection, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] Client disconnected: {connection.id} (user={connection.user_id})")
    finally:
        await hub.lifecycle.on_disconnect(connection)


async def _reject_frame(hub: ChatHub, connection: Connection, reason: str) -> None:
    await hub.router.send_to(connection.id, MessageValidationError(reason).to_payload())


# =============================================================================
# REST
# =============================================================================


@router.post("/chatroom/messages/send", response_model=Message, status_code=201)
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> Message:
    """Persist a message and deliver it to the room's live subscribers.

    Example:
        POST /chatroom/messages/send
        {"roomId": "r1", "content": "hello", "clientMsgId": "c-42"}
    """
    message = await hub.pipeline.send_as_user(
        user_id,
        request.roomId,
        request.content,
        type_=request.messageType,
        reply_to_id=request.replyToId,
        media_url=request.mediaUrl,
        client_msg_id=request.clientMsgId,
    )
    logger.info(f"[REST] {user_id} sent message {message.id} to room {request.roomId}")
    return message


@router.get("/chatroom/{room_id}/messages", response_model=MessagePage)
async def get_messages(
    room_id: str,
    page: int = Query(1, ge=1, description="1 = most recent page"),
    pageSize: Optional[int] = Query(None, ge=1, description="Messages per page (capped by the store)"),
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> MessagePage:
    """Get one page of a room's history, oldest first within the page.

    Example:
        GET /chatroom/r1/messages?page=2&pageSize=50
    """
    roles = await hub.store.get_room_membership(room_id)
    if user_id not in roles:
        raise NotAMember(f"You are not a member of room {room_id}")

    page_size = min(pageSize or hub.default_page_size, hub.max_page_size)
    messages = await hub.store.list_messages(room_id, page, page_size)
    total = await hub.store.count_messages(room_id)
    return MessagePage(
        messages=messages,
        page=page,
        pageSize=page_size,
        hasMore=page * page_size < total,
    )


@router.post("/chatroom/messages/{message_id}/read", response_model=ReadResponse)
async def mark_message_read(
    message_id: str,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> ReadResponse:
    added = await hub.pipeline.mark_read_as_user(user_id, message_id)
    return ReadResponse(messageId=message_id, read=added)


@router.delete("/chatroom/messages/{message_id}", response_model=Message)
async def delete_message(
    message_id: str,
    user_id: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> Message:
    return await hub.pipeline.delete_as_user(user_id, message_id)


@router.get("/presence/{user_id}", response_model=PresenceRecord)
async def get_presence(
    user_id: str,
    _caller: str = Depends(current_user),
    hub: ChatHub = Depends(get_hub),
) -> PresenceRecord:
    return hub.presence.query(user_id)
