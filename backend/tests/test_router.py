"""Tests for the WebSocket and REST endpoints.

The app is built with ``create_app`` around a hub backed by an in-memory
store, and driven through ``TestClient`` so the lifespan runs.
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from palchat import config as config_module
from palchat.chat.connection import CLOSE_UNAUTHORIZED
from palchat.chat.hub import ChatHub
from palchat.config import AppConfig, reset_config
from palchat.main import create_app
from palchat.store.schemas import RoomType, TOMBSTONE_TEXT

from conftest import SECRET, make_token


def bearer(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def receive_until(ws, event_type, limit=20):
    """Skip unrelated events (presence, acks) until one of the given type arrives."""
    for _ in range(limit):
        event = ws.receive_json()
        if event["type"] == event_type:
            return event
    raise AssertionError(f"No {event_type} event within {limit} events")


@pytest.fixture
def app_hub(store, verifier):
    return ChatHub(store, verifier, presence_debounce_ms=0, typing_timeout_seconds=0.5)


@pytest.fixture
def client(app_hub):
    config = AppConfig(secrets={"jwt": {"secret_key": SECRET}})
    app = create_app(config=config, hub=app_hub)
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestCors:

    def test_configured_origins_are_allowed(self):
        config = AppConfig(server={"allowed_origins": ["https://app.palchat.test"]})
        client = TestClient(create_app(config=config))

        allowed = client.get("/health", headers={"Origin": "https://app.palchat.test"})
        assert allowed.headers["access-control-allow-origin"] == "https://app.palchat.test"
        other = client.get("/health", headers={"Origin": "https://elsewhere.test"})
        assert "access-control-allow-origin" not in other.headers

    def test_settings_file_origins_apply_without_explicit_config(self, tmp_path, monkeypatch):
        settings_file = tmp_path / "palchat.settings.yaml"
        settings_file.write_text(
            "server:\n  allowed_origins:\n    - https://app.palchat.test\n", encoding="utf-8"
        )
        monkeypatch.setattr(config_module, "SETTINGS_FILE", settings_file)
        monkeypatch.setattr(config_module, "SECRETS_FILE", tmp_path / "palchat.secrets.yaml")
        reset_config()
        try:
            client = TestClient(create_app())
            other = client.get("/health", headers={"Origin": "https://elsewhere.test"})
            assert "access-control-allow-origin" not in other.headers
            allowed = client.get("/health", headers={"Origin": "https://app.palchat.test"})
            assert allowed.headers["access-control-allow-origin"] == "https://app.palchat.test"
        finally:
            reset_config()


class TestWebSocket:

    def test_authenticate_with_query_token(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        with client.websocket_connect(f"/ws/chat?token={make_token('alice')}") as ws:
            ack = receive_until(ws, "authenticated")
            assert ack["userId"] == "alice"
            assert ack["rooms"] == [room.id]

    def test_authenticate_as_first_event(self, client):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "authenticate", "token": make_token("alice")})
            assert receive_until(ws, "authenticated")["userId"] == "alice"

    def test_bad_token_closes_with_4001(self, client):
        with client.websocket_connect("/ws/chat?token=garbage") as ws:
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["code"] == "unauthorized"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == CLOSE_UNAUTHORIZED

    def test_messages_flow_between_clients(self, client, store):
        room = store.create_room(RoomType.DIRECT, "alice", ["bob"])
        with client.websocket_connect(f"/ws/chat?token={make_token('alice')}") as ws_a, \
             client.websocket_connect(f"/ws/chat?token={make_token('bob')}") as ws_b:
            receive_until(ws_a, "authenticated")
            receive_until(ws_b, "authenticated")

            ws_a.send_json({
                "type": "send_message", "roomId": room.id,
                "content": "hi", "clientMsgId": "c-1",
            })
            mine = receive_until(ws_a, "new_message")["message"]
            theirs = receive_until(ws_b, "new_message")["message"]
            assert mine["id"] == theirs["id"]
            assert mine["clientMsgId"] == "c-1"

            ws_b.send_json({"type": "message_read", "messageId": theirs["id"]})
            ack = receive_until(ws_a, "message_read")
            assert ack["userId"] == "bob"
            assert ack["status"] == "read"

    def test_typing_round_trip(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        with client.websocket_connect(f"/ws/chat?token={make_token('alice')}") as ws_a, \
             client.websocket_connect(f"/ws/chat?token={make_token('bob')}") as ws_b:
            receive_until(ws_a, "authenticated")
            receive_until(ws_b, "authenticated")

            ws_a.send_json({"type": "typing_start", "roomId": room.id})
            assert receive_until(ws_b, "user_typing")["userId"] == "alice"
            ws_a.send_json({"type": "typing_stop", "roomId": room.id})
            assert receive_until(ws_b, "user_stop_typing")["userId"] == "alice"

    def test_invalid_json_is_reported(self, client):
        with client.websocket_connect(f"/ws/chat?token={make_token('alice')}") as ws:
            receive_until(ws, "authenticated")
            ws.send_text("{not json")
            assert receive_until(ws, "error")["code"] == "validation_error"

    def test_binary_frame_is_reported_and_socket_stays_open(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        with client.websocket_connect(f"/ws/chat?token={make_token('alice')}") as ws:
            receive_until(ws, "authenticated")
            ws.send_bytes(b"\x00\x01")
            error = receive_until(ws, "error")
            assert error["code"] == "validation_error"

            ws.send_json({"type": "send_message", "roomId": room.id, "content": "still here"})
            assert receive_until(ws, "new_message")["message"]["content"] == "still here"

    def test_join_as_non_member(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        with client.websocket_connect(f"/ws/chat?token={make_token('dave')}") as ws:
            receive_until(ws, "authenticated")
            ws.send_json({"type": "join_chat", "roomId": room.id})
            error = receive_until(ws, "error")
            assert error["code"] == "not_a_member"
            assert error["requestType"] == "join_chat"


class TestMessagesAPI:

    def test_rest_send_reaches_live_subscribers(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        with client.websocket_connect(f"/ws/chat?token={make_token('bob')}") as ws:
            receive_until(ws, "authenticated")

            response = client.post(
                "/chatroom/messages/send",
                json={"roomId": room.id, "content": "from the web"},
                headers=bearer("alice"),
            )
            assert response.status_code == 201
            event = receive_until(ws, "new_message")
            assert event["message"]["id"] == response.json()["id"]
            assert event["message"]["senderId"] == "alice"

    def test_requires_token(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        response = client.post("/chatroom/messages/send", json={"roomId": room.id, "content": "x"})
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_non_member_send_is_forbidden(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        response = client.post(
            "/chatroom/messages/send",
            json={"roomId": room.id, "content": "x", "clientMsgId": "c-3"},
            headers=bearer("mallory"),
        )
        assert response.status_code == 403
        assert response.json()["code"] == "not_a_member"
        assert response.json()["clientMsgId"] == "c-3"

    def test_empty_content_is_rejected(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        response = client.post(
            "/chatroom/messages/send",
            json={"roomId": room.id, "content": ""},
            headers=bearer("alice"),
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_history_pagination(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        ids = [store.create_message(room.id, "alice", f"m{i}")[0].id for i in range(3)]

        first = client.get(f"/chatroom/{room.id}/messages?page=1&pageSize=2", headers=bearer("bob")).json()
        assert [m["id"] for m in first["messages"]] == ids[1:]
        assert first["hasMore"] is True

        second = client.get(f"/chatroom/{room.id}/messages?page=2&pageSize=2", headers=bearer("bob")).json()
        assert [m["id"] for m in second["messages"]] == ids[:1]
        assert second["hasMore"] is False

    def test_history_is_members_only(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        store.create_message(room.id, "alice", "private")
        response = client.get(f"/chatroom/{room.id}/messages", headers=bearer("dave"))
        assert response.status_code == 403
        assert "messages" not in response.json()

    def test_mark_read_and_delete(self, client, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        message, _ = store.create_message(room.id, "alice", "hello")

        read = client.post(f"/chatroom/messages/{message.id}/read", headers=bearer("bob"))
        assert read.json() == {"messageId": message.id, "read": True}
        again = client.post(f"/chatroom/messages/{message.id}/read", headers=bearer("bob"))
        assert again.json()["read"] is False

        forbidden = client.delete(f"/chatroom/messages/{message.id}", headers=bearer("bob"))
        assert forbidden.status_code == 403

        deleted = client.delete(f"/chatroom/messages/{message.id}", headers=bearer("alice"))
        assert deleted.status_code == 200
        assert deleted.json()["content"] == TOMBSTONE_TEXT

    def test_unknown_message(self, client):
        response = client.delete("/chatroom/messages/missing", headers=bearer("alice"))
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_presence_endpoint(self, client):
        assert client.get("/presence/bob", headers=bearer("alice")).json()["status"] == "offline"
        with client.websocket_connect(f"/ws/chat?token={make_token('bob')}") as ws:
            receive_until(ws, "authenticated")
            record = client.get("/presence/bob", headers=bearer("alice")).json()
            assert record["status"] == "online"
            assert record["activeConnectionCount"] == 1


class TestRoomsAPI:

    def test_create_group_and_manage_members(self, client):
        created = client.post(
            "/rooms", json={"type": "group", "name": "hikers", "memberIds": ["bob"]},
            headers=bearer("alice"),
        )
        assert created.status_code == 201
        room_id = created.json()["id"]

        added = client.post(f"/rooms/{room_id}/members", json={"userId": "carol"}, headers=bearer("alice"))
        assert {m["userId"] for m in added.json()["members"]} == {"alice", "bob", "carol"}

        promoted = client.put(
            f"/rooms/{room_id}/members/bob/role", json={"role": "admin"}, headers=bearer("alice")
        )
        roles = {m["userId"]: m["role"] for m in promoted.json()["members"]}
        assert roles["bob"] == "admin"

        removed = client.delete(f"/rooms/{room_id}/members/carol", headers=bearer("bob"))
        assert {m["userId"] for m in removed.json()["members"]} == {"alice", "bob"}

        fetched = client.get(f"/rooms/{room_id}", headers=bearer("bob"))
        assert fetched.json()["name"] == "hikers"
        assert client.get(f"/rooms/{room_id}", headers=bearer("carol")).status_code == 403

    def test_member_cannot_add(self, client):
        room_id = client.post(
            "/rooms", json={"type": "group", "memberIds": ["bob"]}, headers=bearer("alice")
        ).json()["id"]
        response = client.post(f"/rooms/{room_id}/members", json={"userId": "eve"}, headers=bearer("bob"))
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_direct_room_is_reused(self, client):
        first = client.post("/rooms", json={"type": "direct", "memberIds": ["bob"]}, headers=bearer("alice"))
        second = client.post("/rooms", json={"type": "direct", "memberIds": ["alice"]}, headers=bearer("bob"))
        assert first.json()["id"] == second.json()["id"]

    def test_added_member_socket_receives_room_events(self, client):
        room_id = client.post(
            "/rooms", json={"type": "group", "memberIds": ["bob"]}, headers=bearer("alice")
        ).json()["id"]
        with client.websocket_connect(f"/ws/chat?token={make_token('dave')}") as ws:
            receive_until(ws, "authenticated")
            client.post(f"/rooms/{room_id}/members", json={"userId": "dave"}, headers=bearer("alice"))
            assert receive_until(ws, "member_added")["userId"] == "dave"

            client.post(
                "/chatroom/messages/send",
                json={"roomId": room_id, "content": "welcome dave"},
                headers=bearer("alice"),
            )
            assert receive_until(ws, "new_message")["message"]["content"] == "welcome dave"
