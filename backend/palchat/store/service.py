"""DuckDB-backed storage for rooms, memberships and messages.

This module is the persisted store the realtime core depends on. It owns
durable state only; who is connected right now lives in the realtime layer.

Database Schema:
    rooms:          id, type, name, created_by, created_at, last_activity,
                    last_message_id
    room_members:   (room_id, user_id) -> role, joined_at
    messages:       id, seq (room-wide order), room_id, sender_id, content,
                    media_url, type, reply_to_id, client_msg_id, created_at,
                    edited_at, deleted, deleted_at, deleted_by
    read_receipts:  (message_id, user_id) -> read_at

Thread Safety:
    A single DuckDB connection is shared and every operation holds
    ``self._lock``. ``StoreClient`` runs these calls in worker threads so the
    event loop is never blocked on persistence.

Usage:
    store = ChatStore(db_path=":memory:")
    room = store.create_room(RoomType.GROUP, created_by="u1", member_ids=["u2"])
    message, created = store.create_message(room.id, "u1", "hi", MessageType.TEXT)
"""
import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import duckdb

from palchat.errors import NotFound, TransientStoreError

from .schemas import (
    ChatRoom,
    MemberRole,
    Message,
    MessageType,
    ReadReceipt,
    RoomMember,
    RoomType,
    TOMBSTONE_TEXT,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id              VARCHAR PRIMARY KEY,
        type            VARCHAR NOT NULL,
        name            VARCHAR,
        created_by      VARCHAR NOT NULL,
        created_at      TIMESTAMP NOT NULL,
        last_activity   TIMESTAMP,
        last_message_id VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_members (
        room_id   VARCHAR NOT NULL,
        user_id   VARCHAR NOT NULL,
        role      VARCHAR NOT NULL DEFAULT 'member',
        joined_at TIMESTAMP NOT NULL,
        PRIMARY KEY (room_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id            VARCHAR PRIMARY KEY,
        seq           BIGINT NOT NULL DEFAULT nextval('messages_seq'),
        room_id       VARCHAR NOT NULL,
        sender_id     VARCHAR NOT NULL,
        content       VARCHAR NOT NULL DEFAULT '',
        media_url     VARCHAR,
        type          VARCHAR NOT NULL DEFAULT 'text',
        reply_to_id   VARCHAR,
        client_msg_id VARCHAR,
        created_at    TIMESTAMP NOT NULL,
        edited_at     TIMESTAMP,
        deleted       BOOLEAN NOT NULL DEFAULT FALSE,
        deleted_at    TIMESTAMP,
        deleted_by    VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS read_receipts (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        read_at    TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id)",
    "CREATE INDEX IF NOT EXISTS idx_members_user ON room_members(user_id)",
]

_MESSAGE_COLUMNS = [
    "id", "seq", "room_id", "sender_id", "content", "media_url", "type",
    "reply_to_id", "client_msg_id", "created_at", "edited_at", "deleted",
    "deleted_at", "deleted_by",
]
_MESSAGE_SELECT = f"SELECT {', '.join(_MESSAGE_COLUMNS)} FROM messages"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form DuckDB TIMESTAMP columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ChatStore:
    """Durable store for chat rooms and messages.

    Attributes:
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    def __init__(self, db_path: str = ":memory:", max_page_size: int = 100) -> None:
        self._db_path = db_path
        self._max_page_size = max_page_size
        self._lock = threading.Lock()
        self._conn: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        for statement in _SCHEMA:
            self._conn.execute(statement)
        logger.info("[Store] Initialized with db=%s", db_path)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise TransientStoreError("Store connection is closed")
        return self._conn

    # -----------------------------------------------------------------------
    # Rooms and membership
    # -----------------------------------------------------------------------

    def create_room(
        self,
        room_type: RoomType,
        created_by: str,
        member_ids: Iterable[str] = (),
        name: Optional[str] = None,
    ) -> ChatRoom:
        """Create a room with its creator and initial members.

        The creator of a group room becomes its owner; direct rooms have no
        owner and both participants are plain members.
        """
        room_id = str(uuid.uuid4())
        now = utcnow()
        creator_role = MemberRole.OWNER if room_type == RoomType.GROUP else MemberRole.MEMBER
        members = [(created_by, creator_role)] + [
            (user_id, MemberRole.MEMBER) for user_id in dict.fromkeys(member_ids)
            if user_id != created_by
        ]
        with self._lock:
            conn = self._connection()
            conn.begin()
            try:
                conn.execute(
                    "INSERT INTO rooms (id, type, name, created_by, created_at, last_activity) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    [room_id, room_type.value, name, created_by, now, now],
                )
                for user_id, role in members:
                    conn.execute(
                        "INSERT INTO room_members (room_id, user_id, role, joined_at) "
                        "VALUES (?, ?, ?, ?)",
                        [room_id, user_id, role.value, now],
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            room = self._get_room_locked(room_id)
        logger.info("[Store] Created %s room %s with %d members", room_type.value, room_id, len(members))
        return room

    def get_room(self, room_id: str) -> ChatRoom:
        with self._lock:
            return self._get_room_locked(room_id)

    def _get_room_locked(self, room_id: str) -> ChatRoom:
        conn = self._connection()
        row = conn.execute(
            "SELECT id, type, name, created_by, created_at, last_activity, last_message_id "
            "FROM rooms WHERE id = ?",
            [room_id],
        ).fetchone()
        if row is None:
            raise NotFound(f"Room {room_id} not found")
        member_rows = conn.execute(
            "SELECT user_id, role, joined_at FROM room_members "
            "WHERE room_id = ? ORDER BY joined_at, user_id",
            [room_id],
        ).fetchall()
        return ChatRoom(
            id=row[0],
            type=RoomType(row[1]),
            name=row[2],
            createdBy=row[3],
            createdAt=row[4],
            lastActivity=row[5],
            lastMessageId=row[6],
            members=[
                RoomMember(userId=m[0], role=MemberRole(m[1]), joinedAt=m[2])
                for m in member_rows
            ],
        )

    def find_direct_room(self, user_a: str, user_b: str) -> Optional[ChatRoom]:
        """Return the direct room shared by two users, if one exists."""
        with self._lock:
            row = self._connection().execute(
                """
                SELECT r.id FROM rooms r
                JOIN room_members a ON a.room_id = r.id AND a.user_id = ?
                JOIN room_members b ON b.room_id = r.id AND b.user_id = ?
                WHERE r.type = 'direct'
                LIMIT 1
                """,
                [user_a, user_b],
            ).fetchone()
            return self._get_room_locked(row[0]) if row else None

    def get_room_membership(self, room_id: str) -> Dict[str, MemberRole]:
        """Map each member's user ID to their role.

        Raises:
            NotFound: If the room does not exist.
        """
        return self.get_room(room_id).roles()

    def rooms_for_user(self, user_id: str) -> List[str]:
        with self._lock:
            rows = self._connection().execute(
                "SELECT room_id FROM room_members WHERE user_id = ? ORDER BY room_id",
                [user_id],
            ).fetchall()
        return [r[0] for r in rows]

    def add_member(
        self, room_id: str, user_id: str, role: MemberRole = MemberRole.MEMBER
    ) -> bool:
        """Add a member. Returns False if the user was already a member."""
        with self._lock:
            conn = self._connection()
            self._get_room_locked(room_id)
            exists = conn.execute(
                "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?",
                [room_id, user_id],
            ).fetchone()
            if exists:
                return False
            conn.execute(
                "INSERT INTO room_members (room_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                [room_id, user_id, role.value, utcnow()],
            )
        return True

    def remove_member(self, room_id: str, user_id: str) -> bool:
        """Remove a member. Returns False if the user was not a member."""
        with self._lock:
            self._get_room_locked(room_id)
            removed = self._connection().execute(
                "DELETE FROM room_members WHERE room_id = ? AND user_id = ? RETURNING user_id",
                [room_id, user_id],
            ).fetchall()
        return len(removed) > 0

    def update_role(self, room_id: str, user_id: str, role: MemberRole) -> None:
        with self._lock:
            conn = self._connection()
            exists = conn.execute(
                "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?",
                [room_id, user_id],
            ).fetchone()
            if not exists:
                raise NotFound(f"User {user_id} is not a member of room {room_id}")
            conn.execute(
                "UPDATE room_members SET role = ? WHERE room_id = ? AND user_id = ?",
                [role.value, room_id, user_id],
            )

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def create_message(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        type_: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
        media_url: Optional[str] = None,
        client_msg_id: Optional[str] = None,
    ) -> Tuple[Message, bool]:
        """Persist a message and bump the room's activity in one transaction.

        The ID, ``createdAt`` and ``seq`` are always assigned here. If the
        sender already stored a message in this room with the same
        ``client_msg_id``, that message is returned with ``created=False``.

        Returns:
            Tuple of (message, created).
        """
        with self._lock:
            conn = self._connection()
            if client_msg_id:
                existing = conn.execute(
                    f"{_MESSAGE_SELECT} WHERE room_id = ? AND sender_id = ? AND client_msg_id = ?",
                    [room_id, sender_id, client_msg_id],
                ).fetchone()
                if existing:
                    return self._rows_to_messages([existing])[0], False

            message_id = str(uuid.uuid4())
            now = utcnow()
            conn.begin()
            try:
                conn.execute(
                    """
                    INSERT INTO messages
                      (id, room_id, sender_id, content, media_url, type,
                       reply_to_id, client_msg_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        message_id, room_id, sender_id, content, media_url,
                        type_.value, reply_to_id, client_msg_id, now,
                    ],
                )
                conn.execute(
                    "UPDATE rooms SET last_activity = ?, last_message_id = ? WHERE id = ?",
                    [now, message_id, room_id],
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            message = self._get_message_locked(message_id)
        return message, True

    def get_message(self, message_id: str) -> Message:
        with self._lock:
            return self._get_message_locked(message_id)

    def _get_message_locked(self, message_id: str) -> Message:
        row = self._connection().execute(
            f"{_MESSAGE_SELECT} WHERE id = ?", [message_id]
        ).fetchone()
        if row is None:
            raise NotFound(f"Message {message_id} not found")
        return self._rows_to_messages([row])[0]

    def append_read_receipt(self, message_id: str, user_id: str, read_at: datetime) -> bool:
        """Record that a user read a message.

        Returns:
            True if a receipt was added, False if the user had already read it.
        """
        with self._lock:
            conn = self._connection()
            self._get_message_locked(message_id)
            exists = conn.execute(
                "SELECT 1 FROM read_receipts WHERE message_id = ? AND user_id = ?",
                [message_id, user_id],
            ).fetchone()
            if exists:
                return False
            conn.execute(
                "INSERT INTO read_receipts (message_id, user_id, read_at) VALUES (?, ?, ?)",
                [message_id, user_id, read_at],
            )
        return True

    def soft_delete_message(
        self, message_id: str, deleted_by: str, deleted_at: datetime
    ) -> Message:
        """Tombstone a message. The row itself is never removed."""
        with self._lock:
            self._get_message_locked(message_id)
            self._connection().execute(
                "UPDATE messages SET deleted = TRUE, deleted_at = ?, deleted_by = ? "
                "WHERE id = ? AND NOT deleted",
                [deleted_at, deleted_by, message_id],
            )
            return self._get_message_locked(message_id)

    def edit_message(self, message_id: str, content: str, edited_at: datetime) -> Message:
        with self._lock:
            self._get_message_locked(message_id)
            self._connection().execute(
                "UPDATE messages SET content = ?, edited_at = ? WHERE id = ?",
                [content, edited_at, message_id],
            )
            return self._get_message_locked(message_id)

    def list_messages(self, room_id: str, page: int = 1, page_size: int = 50) -> List[Message]:
        """Get one page of a room's history, oldest first.

        Page 1 holds the most recent ``page_size`` messages, page 2 the ones
        before those, and so on.
        """
        page = max(page, 1)
        page_size = max(1, min(page_size, self._max_page_size))  # Prevent abuse
        with self._lock:
            rows = self._connection().execute(
                f"{_MESSAGE_SELECT} WHERE room_id = ? ORDER BY seq DESC LIMIT ? OFFSET ?",
                [room_id, page_size, (page - 1) * page_size],
            ).fetchall()
            messages = self._rows_to_messages(rows)
        messages.reverse()
        return messages

    def count_messages(self, room_id: str) -> int:
        with self._lock:
            row = self._connection().execute(
                "SELECT COUNT(*) FROM messages WHERE room_id = ?", [room_id]
            ).fetchone()
        return int(row[0]) if row else 0

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _rows_to_messages(self, rows: List[tuple]) -> List[Message]:
        if not rows:
            return []
        ids = [row[0] for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        receipt_rows = self._connection().execute(
            f"SELECT message_id, user_id, read_at FROM read_receipts "
            f"WHERE message_id IN ({placeholders}) ORDER BY read_at, user_id",
            ids,
        ).fetchall()
        receipts: Dict[str, List[ReadReceipt]] = {}
        for message_id, user_id, read_at in receipt_rows:
            receipts.setdefault(message_id, []).append(ReadReceipt(userId=user_id, readAt=read_at))
        return [self._row_to_message(row, receipts.get(row[0], [])) for row in rows]

    def _row_to_message(self, row: tuple, receipts: List[ReadReceipt]) -> Message:
        d = dict(zip(_MESSAGE_COLUMNS, row))
        deleted = bool(d["deleted"])
        return Message(
            id=d["id"],
            seq=d["seq"],
            roomId=d["room_id"],
            senderId=d["sender_id"],
            content=TOMBSTONE_TEXT if deleted else d["content"],
            mediaUrl=None if deleted else d["media_url"],
            type=MessageType(d["type"]),
            replyToId=d["reply_to_id"],
            clientMsgId=d["client_msg_id"],
            createdAt=d["created_at"],
            editedAt=d["edited_at"],
            readBy=receipts,
            deleted=deleted,
            deletedAt=d["deleted_at"],
            deletedBy=d["deleted_by"],
        )


class StoreClient:
    """Async facade over ``ChatStore`` used by the realtime core.

    Each call runs in a worker thread. DuckDB failures surface as
    ``TransientStoreError``; domain errors such as ``NotFound`` pass through.
    """

    def __init__(self, store: ChatStore) -> None:
        self.store = store

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except duckdb.Error as exc:
            logger.error("[Store] %s failed: %s", fn.__name__, exc)
            raise TransientStoreError("Message store is temporarily unavailable") from exc

    async def get_room(self, room_id: str) -> ChatRoom:
        return await self._call(self.store.get_room, room_id)

    async def find_direct_room(self, user_a: str, user_b: str) -> Optional[ChatRoom]:
        return await self._call(self.store.find_direct_room, user_a, user_b)

    async def get_room_membership(self, room_id: str) -> Dict[str, MemberRole]:
        return await self._call(self.store.get_room_membership, room_id)

    async def rooms_for_user(self, user_id: str) -> List[str]:
        return await self._call(self.store.rooms_for_user, user_id)

    async def create_room(self, room_type: RoomType, created_by: str,
                          member_ids: Iterable[str] = (), name: Optional[str] = None) -> ChatRoom:
        return await self._call(self.store.create_room, room_type, created_by, list(member_ids), name)

    async def add_member(self, room_id: str, user_id: str,
                         role: MemberRole = MemberRole.MEMBER) -> bool:
        return await self._call(self.store.add_member, room_id, user_id, role)

    async def remove_member(self, room_id: str, user_id: str) -> bool:
        return await self._call(self.store.remove_member, room_id, user_id)

    async def update_role(self, room_id: str, user_id: str, role: MemberRole) -> None:
        await self._call(self.store.update_role, room_id, user_id, role)

    async def create_message(self, room_id: str, sender_id: str, content: str,
                             type_: MessageType = MessageType.TEXT,
                             reply_to_id: Optional[str] = None,
                             media_url: Optional[str] = None,
                             client_msg_id: Optional[str] = None) -> Tuple[Message, bool]:
        return await self._call(
            self.store.create_message, room_id, sender_id, content, type_,
            reply_to_id, media_url, client_msg_id,
        )

    async def get_message(self, message_id: str) -> Message:
        return await self._call(self.store.get_message, message_id)

    async def append_read_receipt(self, message_id: str, user_id: str, read_at: datetime) -> bool:
        return await self._call(self.store.append_read_receipt, message_id, user_id, read_at)

    async def soft_delete_message(self, message_id: str, deleted_by: str,
                                  deleted_at: datetime) -> Message:
        return await self._call(self.store.soft_delete_message, message_id, deleted_by, deleted_at)

    async def edit_message(self, message_id: str, content: str, edited_at: datetime) -> Message:
        return await self._call(self.store.edit_message, message_id, content, edited_at)

    async def list_messages(self, room_id: str, page: int = 1, page_size: int = 50) -> List[Message]:
        return await self._call(self.store.list_messages, room_id, page, page_size)

    async def count_messages(self, room_id: str) -> int:
        return await self._call(self.store.count_messages, room_id)
