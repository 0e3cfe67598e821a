"""Live transport sessions.

A ``Connection`` wraps whatever carries JSON frames to one client (a
Starlette ``WebSocket`` in production, an in-memory fake in tests) together
with the identity established by the handshake.
"""
import logging
import time
import uuid
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

# Close code sent when a connection fails or never completes authentication
CLOSE_UNAUTHORIZED = 4001


class Transport(Protocol):
    async def send_json(self, data: dict) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class ConnectionState(str, Enum):
    """Per-connection state machine.

    CONNECTING -> AUTHENTICATED -> DISCONNECTED, or CONNECTING ->
    DISCONNECTED when the handshake fails or times out.
    """
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


class Connection:
    """One client session, owned by the lifecycle manager."""

    def __init__(self, transport: Transport, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.transport = transport
        self.user_id: Optional[str] = None
        self.state = ConnectionState.CONNECTING
        self.opened_at = time.time()

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    async def send(self, payload: dict) -> None:
        await self.transport.send_json(payload)

    async def close(self, code: int = 1000) -> None:
        try:
            await self.transport.close(code=code)
        except Exception as e:
            logger.debug(f"Close on connection {self.id} failed (already closed?): {e}")

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user_id={self.user_id!r}, state={self.state.value})"
