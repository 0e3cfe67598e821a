"""Tests for membership changes and their effect on live connections."""
import pytest

from palchat.errors import Forbidden, MessageValidationError, NotAMember, NotFound
from palchat.store.schemas import MemberRole, RoomType


class TestCreateRoom:

    @pytest.mark.asyncio
    async def test_direct_room_is_reused_for_a_pair(self, hub):
        first = await hub.membership.create_room("alice", RoomType.DIRECT, ["bob"])
        again = await hub.membership.create_room("bob", RoomType.DIRECT, ["alice"])
        assert again.id == first.id

    @pytest.mark.asyncio
    async def test_direct_room_needs_exactly_one_peer(self, hub):
        with pytest.raises(MessageValidationError):
            await hub.membership.create_room("alice", RoomType.DIRECT, ["bob", "carol"])
        with pytest.raises(MessageValidationError):
            await hub.membership.create_room("alice", RoomType.DIRECT, ["alice"])

    @pytest.mark.asyncio
    async def test_live_connections_are_subscribed_to_new_room(self, hub, connect):
        a, _ = await connect("alice")
        b, tb = await connect("bob")

        room = await hub.membership.create_room("alice", RoomType.GROUP, ["bob"], name="trip")
        await hub.dispatch(a, {"type": "send_message", "roomId": room.id, "content": "plans?"})

        assert room.roles()["alice"] == MemberRole.OWNER
        assert len(tb.of_type("new_message")) == 1


class TestMembers:

    @pytest.mark.asyncio
    async def test_added_member_receives_events_without_reconnect(self, hub, store, connect):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        a, ta = await connect("alice")
        d, td = await connect("dave")

        await hub.membership.add_member("alice", room.id, "dave")

        added = ta.of_type("member_added")[0]
        assert added == {
            "type": "member_added", "roomId": room.id, "userId": "dave",
            "role": "member", "addedBy": "alice",
        }
        assert len(td.of_type("member_added")) == 1

        await hub.dispatch(a, {"type": "send_message", "roomId": room.id, "content": "welcome"})
        assert len(td.of_type("new_message")) == 1

    @pytest.mark.asyncio
    async def test_plain_member_cannot_add(self, hub, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        with pytest.raises(Forbidden):
            await hub.membership.add_member("bob", room.id, "dave")
        with pytest.raises(NotAMember):
            await hub.membership.add_member("zed", room.id, "dave")

    @pytest.mark.asyncio
    async def test_adding_existing_member_or_owner_role(self, hub, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        with pytest.raises(MessageValidationError):
            await hub.membership.add_member("alice", room.id, "bob")
        with pytest.raises(MessageValidationError):
            await hub.membership.add_member("alice", room.id, "dave", MemberRole.OWNER)

    @pytest.mark.asyncio
    async def test_direct_rooms_have_fixed_members(self, hub, store):
        room = store.create_room(RoomType.DIRECT, "alice", ["bob"])
        with pytest.raises(Forbidden):
            await hub.membership.add_member("alice", room.id, "carol")
        with pytest.raises(Forbidden):
            await hub.membership.remove_member("alice", room.id, "alice")

    @pytest.mark.asyncio
    async def test_removed_member_is_told_then_unsubscribed(self, hub, store, connect):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        a, _ = await connect("alice")
        b, tb = await connect("bob")

        await hub.membership.remove_member("alice", room.id, "bob")

        assert tb.of_type("member_removed") == [
            {"type": "member_removed", "roomId": room.id, "userId": "bob", "removedBy": "alice"}
        ]
        assert room.id not in hub.router.rooms_of(b.id)
        await hub.dispatch(a, {"type": "send_message", "roomId": room.id, "content": "bye"})
        assert tb.of_type("new_message") == []

        await hub.dispatch(b, {"type": "join_chat", "roomId": room.id})
        assert tb.of_type("error")[-1]["code"] == "not_a_member"

    @pytest.mark.asyncio
    async def test_member_can_leave_but_owner_cannot_be_removed(self, hub, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob", "carol"])
        store.update_role(room.id, "bob", MemberRole.ADMIN)

        updated = await hub.membership.remove_member("carol", room.id, "carol")
        assert "carol" not in updated.roles()

        with pytest.raises(Forbidden):
            await hub.membership.remove_member("bob", room.id, "alice")
        with pytest.raises(NotFound):
            await hub.membership.remove_member("alice", room.id, "carol")

    @pytest.mark.asyncio
    async def test_role_update_is_broadcast_and_grants_moderation(self, hub, store, connect):
        room = store.create_room(RoomType.GROUP, "alice", ["bob", "carol"])
        message, _ = store.create_message(room.id, "carol", "spam")
        b, tb = await connect("bob")

        await hub.membership.update_role("alice", room.id, "bob", MemberRole.ADMIN)
        assert tb.of_type("role_updated")[0]["role"] == "admin"

        await hub.dispatch(b, {"type": "delete_message", "messageId": message.id})
        assert store.get_message(message.id).deleted is True

    @pytest.mark.asyncio
    async def test_ownership_cannot_change(self, hub, store):
        room = store.create_room(RoomType.GROUP, "alice", ["bob"])
        store.update_role(room.id, "bob", MemberRole.ADMIN)
        with pytest.raises(Forbidden):
            await hub.membership.update_role("bob", room.id, "alice", MemberRole.MEMBER)
        with pytest.raises(Forbidden):
            await hub.membership.update_role("alice", room.id, "bob", MemberRole.OWNER)
