"""Tests for room subscription routing and fan-out."""
import pytest

from palchat.chat.subscriptions import RoomRouter

from conftest import FakeTransport, authenticated_connection


def _registered(router, user_id, fail=False):
    transport = FakeTransport(fail=fail)
    connection = authenticated_connection(user_id, transport)
    router.register(connection)
    return connection, transport


class TestSubscriptions:

    def test_maps_stay_consistent(self):
        router = RoomRouter()
        conn, _ = _registered(router, "alice")

        assert router.subscribe(conn.id, "r1") is True
        assert router.subscribe(conn.id, "r1") is False
        router.subscribe(conn.id, "r2")
        assert router.members_of("r1") == {conn.id}
        assert router.rooms_of(conn.id) == {"r1", "r2"}

        assert router.unsubscribe(conn.id, "r1") is True
        assert router.unsubscribe(conn.id, "r1") is False
        assert router.members_of("r1") == set()
        assert router.rooms_of(conn.id) == {"r2"}

    def test_unregistered_connection_cannot_subscribe(self):
        router = RoomRouter()
        conn = authenticated_connection("alice")
        assert router.subscribe(conn.id, "r1") is False
        assert router.members_of("r1") == set()

    def test_unregister_drops_every_subscription(self):
        router = RoomRouter()
        conn, _ = _registered(router, "alice")
        router.subscribe(conn.id, "r1")
        router.subscribe(conn.id, "r2")

        assert router.unregister(conn.id) == {"r1", "r2"}
        assert router.get(conn.id) is None
        assert router.members_of("r1") == set()
        assert router.members_of("r2") == set()


class TestBroadcast:

    @pytest.mark.asyncio
    async def test_broadcast_reaches_subscribers_only(self):
        router = RoomRouter()
        a, ta = _registered(router, "alice")
        b, tb = _registered(router, "bob")
        c, tc = _registered(router, "carol")
        router.subscribe(a.id, "r1")
        router.subscribe(b.id, "r1")
        router.subscribe(c.id, "r2")

        delivered = await router.broadcast("r1", {"type": "ping"})

        assert delivered == 2
        assert ta.sent == [{"type": "ping"}]
        assert tb.sent == [{"type": "ping"}]
        assert tc.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_excludes_origin(self):
        router = RoomRouter()
        a, ta = _registered(router, "alice")
        b, tb = _registered(router, "bob")
        router.subscribe(a.id, "r1")
        router.subscribe(b.id, "r1")

        await router.broadcast("r1", {"type": "user_typing"}, exclude=a.id)

        assert ta.sent == []
        assert len(tb.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_send_drops_subscriptions_of_dead_connection(self):
        router = RoomRouter()
        alive, t_alive = _registered(router, "alice")
        dead, _ = _registered(router, "bob", fail=True)
        for conn in (alive, dead):
            router.subscribe(conn.id, "r1")
            router.subscribe(conn.id, "r2")

        delivered = await router.broadcast("r1", {"type": "ping"})

        assert delivered == 1
        assert router.rooms_of(dead.id) == set()
        assert router.members_of("r2") == {alive.id}
        # Still registered: its own disconnect handler finishes the teardown
        assert router.get(dead.id) is dead
        assert len(t_alive.sent) == 1

    @pytest.mark.asyncio
    async def test_broadcast_to_rooms_sends_one_copy_per_connection(self):
        router = RoomRouter()
        a, ta = _registered(router, "alice")
        b, tb = _registered(router, "bob")
        router.subscribe(a.id, "r1")
        router.subscribe(a.id, "r2")
        router.subscribe(b.id, "r2")

        delivered = await router.broadcast_to_rooms(["r1", "r2"], {"type": "user_status_changed"})

        assert delivered == 2
        assert len(ta.sent) == 1
        assert len(tb.sent) == 1

    @pytest.mark.asyncio
    async def test_send_to_unknown_connection(self):
        router = RoomRouter()
        assert await router.send_to("missing", {"type": "ping"}) is False
