"""Shared test fixtures and configuration for backend tests."""
import time
from typing import Optional

import jwt
import pytest
import pytest_asyncio

from palchat.auth.service import JWTTokenVerifier
from palchat.chat.connection import Connection, ConnectionState
from palchat.chat.hub import ChatHub
from palchat.store.service import ChatStore

SECRET = "test-secret"


def make_token(user_id: str, secret: str = SECRET, expires_in: int = 3600, claim: str = "id") -> str:
    """Sign a token the way the account service does."""
    payload = {claim: user_id, "exp": int(time.time()) + expires_in}
    return jwt.encode(payload, secret, algorithm="HS256")


class FakeTransport:
    """In-memory stand-in for a Starlette WebSocket."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed_code: Optional[int] = None
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("connection reset by peer")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_code = code

    def of_type(self, event_type: str) -> list:
        return [event for event in self.sent if event["type"] == event_type]

    def clear(self) -> None:
        self.sent.clear()


def authenticated_connection(user_id: str, transport: Optional[FakeTransport] = None) -> Connection:
    """A connection that skipped the handshake, for component-level tests."""
    connection = Connection(transport or FakeTransport())
    connection.user_id = user_id
    connection.state = ConnectionState.AUTHENTICATED
    return connection


@pytest.fixture
def store():
    """Fresh in-memory store per test."""
    chat_store = ChatStore(db_path=":memory:")
    yield chat_store
    chat_store.close()


@pytest.fixture
def verifier():
    return JWTTokenVerifier(secret_key=SECRET)


@pytest_asyncio.fixture
async def hub(store, verifier):
    """Hub with immediate presence announcements and a short typing timeout."""
    chat_hub = ChatHub(
        store,
        verifier,
        handshake_timeout_seconds=5.0,
        presence_debounce_ms=0,
        typing_timeout_seconds=0.1,
    )
    yield chat_hub
    await chat_hub.shutdown()


@pytest.fixture
def connect(hub):
    """Open and authenticate a connection for a user. Returns (connection, transport)."""

    async def _connect(user_id: str):
        transport = FakeTransport()
        connection = hub.lifecycle.open(transport)
        await hub.dispatch(connection, {"type": "authenticate", "token": make_token(user_id)})
        assert connection.is_authenticated, transport.sent
        return connection, transport

    return _connect
