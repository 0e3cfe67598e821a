"""Composition root for the realtime core.

``ChatHub`` wires the store client, subscription router, presence tracker,
typing coordinator, delivery pipeline, lifecycle manager and membership
coordinator together and dispatches inbound socket events to them. One hub
lives on ``app.state`` for the lifetime of the application.
"""
import logging
from typing import Optional

from palchat.auth.service import JWTTokenVerifier, TokenVerifier
from palchat.config import AppConfig
from palchat.errors import ChatError, Unauthorized
from palchat.store.service import ChatStore, StoreClient

from .connection import Connection, ConnectionState
from .delivery import MessagePipeline
from .events import (
    AuthenticateEvent,
    DeleteMessageEvent,
    EditMessageEvent,
    InboundEvent,
    JoinChatEvent,
    LeaveChatEvent,
    MessageReadEvent,
    SendMessageEvent,
    TypingStartEvent,
    TypingStopEvent,
    UpdateStatusEvent,
    UserStatusChangedEvent,
    parse_inbound,
)
from .lifecycle import ConnectionLifecycleManager
from .membership import MembershipCoordinator
from .presence import PresenceRecord, PresenceTracker
from .subscriptions import RoomRouter
from .typing_indicators import TypingCoordinator

logger = logging.getLogger(__name__)


class ChatHub:
    """All realtime components for one application instance."""

    def __init__(
        self,
        store: ChatStore,
        verifier: TokenVerifier,
        handshake_timeout_seconds: float = 15.0,
        presence_debounce_ms: int = 300,
        typing_timeout_seconds: float = 3.0,
        max_content_length: int = 10000,
        default_page_size: int = 50,
        max_page_size: int = 100,
    ) -> None:
        self.chat_store = store
        self.verifier = verifier
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.store = StoreClient(store)
        self.router = RoomRouter()
        self.presence = PresenceTracker(
            on_change=self._announce_presence,
            debounce_seconds=presence_debounce_ms / 1000,
        )
        self.typing = TypingCoordinator(self.router, typing_timeout_seconds)
        self.pipeline = MessagePipeline(self.store, self.router, self.presence, max_content_length)
        self.lifecycle = ConnectionLifecycleManager(
            self.store, self.router, self.presence, self.typing, verifier,
            handshake_timeout_seconds=handshake_timeout_seconds,
        )
        self.membership = MembershipCoordinator(self.store, self.router, self.lifecycle, self.typing)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: Optional[ChatStore] = None,
        verifier: Optional[TokenVerifier] = None,
    ) -> "ChatHub":
        realtime = config.realtime
        return cls(
            store=store or ChatStore(config.store.db_path, config.store.max_page_size),
            verifier=verifier or JWTTokenVerifier.from_config(config),
            handshake_timeout_seconds=realtime.handshake_timeout_seconds,
            presence_debounce_ms=realtime.presence_debounce_ms,
            typing_timeout_seconds=realtime.typing_timeout_seconds,
            max_content_length=realtime.max_content_length,
            default_page_size=config.store.default_page_size,
            max_page_size=config.store.max_page_size,
        )

    async def dispatch(self, connection: Connection, payload: object) -> None:
        """Handle one inbound event from a connection.

        Errors are reported to the requesting connection only; nothing else
        in the room observes a failed request.
        """
        request_type = payload.get("type") if isinstance(payload, dict) else None
        try:
            event = parse_inbound(payload)
            if not isinstance(event, AuthenticateEvent) and not connection.is_authenticated:
                raise Unauthorized("Authenticate before sending other events")
            await self._route(connection, event)
        except ChatError as exc:
            logger.info(
                f"[Hub] {request_type or 'event'} from {connection.id} rejected: "
                f"{exc.code} ({exc.message})"
            )
            if connection.state != ConnectionState.DISCONNECTED:
                await self.router.send_to(connection.id, exc.to_payload(request_type))

    async def _route(self, connection: Connection, event: InboundEvent) -> None:
        if isinstance(event, AuthenticateEvent):
            await self.lifecycle.authenticate(connection, event.token)
        elif isinstance(event, JoinChatEvent):
            await self.lifecycle.join_room(connection, event.roomId)
        elif isinstance(event, LeaveChatEvent):
            await self.lifecycle.leave_room(connection, event.roomId)
        elif isinstance(event, SendMessageEvent):
            await self.pipeline.send(
                connection,
                event.roomId,
                event.content,
                type_=event.messageType,
                reply_to_id=event.replyToId,
                media_url=event.mediaUrl,
                client_msg_id=event.clientMsgId,
            )
            # Sending implies the typist is done
            if self.typing.is_typing(event.roomId, connection.user_id):
                await self.typing.stop_typing(connection, event.roomId)
        elif isinstance(event, TypingStartEvent):
            await self.typing.start_typing(connection, event.roomId)
        elif isinstance(event, TypingStopEvent):
            await self.typing.stop_typing(connection, event.roomId)
        elif isinstance(event, MessageReadEvent):
            await self.pipeline.mark_read(connection, event.messageId)
        elif isinstance(event, DeleteMessageEvent):
            await self.pipeline.delete(connection, event.messageId)
        elif isinstance(event, EditMessageEvent):
            await self.pipeline.edit(connection, event.messageId, event.content)
        elif isinstance(event, UpdateStatusEvent):
            await self.lifecycle.set_status(connection, event.status)

    async def _announce_presence(self, record: PresenceRecord) -> None:
        room_ids = await self.store.rooms_for_user(record.userId)
        delivered = await self.router.broadcast_to_rooms(
            room_ids,
            UserStatusChangedEvent(
                userId=record.userId,
                status=record.status,
                lastSeenAt=record.lastSeenAt,
            ).to_wire(),
        )
        logger.info(
            f"[Hub] {record.userId} is {record.status.value}, "
            f"announced to {delivered} connections"
        )

    async def shutdown(self) -> None:
        await self.lifecycle.shutdown()
        await self.typing.shutdown()
        await self.presence.shutdown()
        self.chat_store.close()
        logger.info("[Hub] Shut down")
