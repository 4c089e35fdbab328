"""Durable persistence for users, rooms, memberships and messages.

The chat core only depends on the ``MessageStore`` protocol. ``SqliteMessageStore``
is the bundled implementation: a small pool of ``sqlite3`` connections shared by
all dispatcher calls, where every public method is one short transaction.

Timestamps are integer milliseconds since the epoch and are always assigned
here, never taken from clients.
"""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Protocol

from .constants import MESSAGE_TYPES, MSG_TYPE_TEXT, ROLE_MEMBER
from .envelope import now_ms
from .errors import StoreUnavailable, ValidationError
from .models import Member, Message, Room, UserIdentity

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    email TEXT UNIQUE,
    password_hash TEXT NOT NULL,
    display_name TEXT,
    is_online INTEGER NOT NULL DEFAULT 0,
    last_seen INTEGER,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_rooms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    is_private INTEGER NOT NULL DEFAULT 0,
    created_by INTEGER REFERENCES users(id),
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS room_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id INTEGER NOT NULL REFERENCES chat_rooms(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role TEXT NOT NULL DEFAULT 'member',
    joined_at INTEGER NOT NULL,
    UNIQUE(room_id, user_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id INTEGER NOT NULL REFERENCES chat_rooms(id) ON DELETE CASCADE,
    sender_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    message_type TEXT NOT NULL DEFAULT 'text',
    reply_to_id INTEGER REFERENCES messages(id) ON DELETE SET NULL,
    created_at INTEGER NOT NULL,
    edited_at INTEGER,
    is_deleted INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_messages_room_created
    ON messages(room_id, created_at, id);
"""


class MessageStore(Protocol):
    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        display_name: str | None = None,
        email: str | None = None,
    ) -> UserIdentity: ...

    def get_user(self, user_id: int) -> UserIdentity | None: ...

    def get_users(self, user_ids: Iterable[int]) -> dict[int, UserIdentity]: ...

    def get_user_by_username(self, username: str) -> UserIdentity | None: ...

    def get_credentials(self, login: str) -> tuple[UserIdentity, str] | None: ...

    def set_user_online(self, user_id: int, online: bool) -> None: ...

    def create_room(
        self,
        name: str,
        *,
        description: str = "",
        created_by: int | None = None,
        is_private: bool = False,
    ) -> Room: ...

    def get_room(self, room_id: int) -> Room | None: ...

    def get_room_by_name(self, name: str) -> Room | None: ...

    def ensure_room(self, name: str, *, description: str = "") -> Room: ...

    def add_member(self, room_id: int, user_id: int, role: str = ROLE_MEMBER) -> None: ...

    def remove_member(self, room_id: int, user_id: int) -> None: ...

    def join_public_room(self, room_id: int, user_id: int) -> bool: ...

    def is_member(self, room_id: int, user_id: int) -> bool: ...

    def get_member_ids(self, room_id: int) -> set[int]: ...

    def get_room_members(self, room_id: int) -> list[Member]: ...

    def get_user_rooms(self, user_id: int) -> list[dict]: ...

    def create_message(
        self,
        room_id: int,
        sender_id: int,
        content: str,
        message_type: str = MSG_TYPE_TEXT,
        reply_to_id: int | None = None,
    ) -> Message: ...

    def get_message(self, message_id: int) -> Message | None: ...

    def get_room_messages(
        self, room_id: int, limit: int = 50, offset: int = 0
    ) -> list[Message]: ...

    def count_room_messages(self, room_id: int) -> int: ...

    def edit_message(self, message_id: int, content: str) -> Message | None: ...

    def soft_delete_message(self, message_id: int) -> bool: ...

    def search_messages(
        self, user_id: int, query: str, room_id: int | None = None, limit: int = 20
    ) -> list[tuple[Message, str]]: ...

    def close(self) -> None: ...


class SqliteMessageStore:
    def __init__(
        self, path: str, *, pool_size: int = 4, timeout_s: float = 5.0
    ) -> None:
        self.path = path
        self.timeout_s = float(timeout_s)
        self.log = logging.getLogger("roomchatd.store")

        # Every ":memory:" connection is a separate database; share one.
        if path == ":memory:":
            pool_size = 1
        self.pool_size = max(1, int(pool_size))

        self._pool: queue.Queue[sqlite3.Connection] = queue.Queue()
        self._all: list[sqlite3.Connection] = []
        self._closed = False
        self._lock = threading.Lock()

        for _ in range(self.pool_size):
            conn = self._connect()
            self._all.append(conn)
            self._pool.put(conn)

        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.path, timeout=self.timeout_s, check_same_thread=False
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"cannot open database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if self.path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        if self._closed:
            raise StoreUnavailable("store is closed")
        try:
            conn = self._pool.get(timeout=self.timeout_s)
        except queue.Empty as e:
            raise StoreUnavailable("database pool exhausted") from e
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            self.log.warning("Database error path=%s err=%s", self.path, e)
            raise StoreUnavailable(f"database error: {e}") from e
        finally:
            self._pool.put(conn)

    def init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        for conn in self._all:
            try:
                conn.close()
            except sqlite3.Error:
                pass

    # Users

    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        display_name: str | None = None,
        email: str | None = None,
    ) -> UserIdentity:
        name = username.strip()
        if not name:
            raise ValidationError("username is required")
        try:
            with self._conn() as conn:
                cur = conn.execute(
                    "INSERT INTO users (username, email, password_hash, display_name, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (name, email, password_hash, display_name or name, now_ms()),
                )
                user_id = int(cur.lastrowid)
        except sqlite3.IntegrityError as e:
            raise ValidationError("username or email already exists") from e
        return UserIdentity(id=user_id, username=name, display_name=display_name or name)

    def get_user(self, user_id: int) -> UserIdentity | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT id, username, display_name FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_users(self, user_ids: Iterable[int]) -> dict[int, UserIdentity]:
        ids = sorted({int(u) for u in user_ids})
        if not ids:
            return {}
        marks = ",".join("?" for _ in ids)
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT id, username, display_name FROM users WHERE id IN ({marks})",
                ids,
            ).fetchall()
        return {int(r["id"]): _user_from_row(r) for r in rows}

    def get_user_by_username(self, username: str) -> UserIdentity | None:
        creds = self.get_credentials(username)
        return creds[0] if creds else None

    def get_credentials(self, login: str) -> tuple[UserIdentity, str] | None:
        """Look up a user by username or email, with the stored password hash."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT id, username, display_name, password_hash FROM users "
                "WHERE username = ? OR email = ? LIMIT 1",
                (login, login),
            ).fetchone()
        if row is None:
            return None
        return _user_from_row(row), str(row["password_hash"])

    def set_user_online(self, user_id: int, online: bool) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE users SET is_online = ?, last_seen = ? WHERE id = ?",
                (1 if online else 0, now_ms(), user_id),
            )

    # Rooms and membership

    def create_room(
        self,
        name: str,
        *,
        description: str = "",
        created_by: int | None = None,
        is_private: bool = False,
    ) -> Room:
        ts = now_ms()
        with self._conn() as conn:
            cur = conn.execute(
                "INSERT INTO chat_rooms (name, description, is_private, created_by, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (name, description, 1 if is_private else 0, created_by, ts),
            )
            room_id = int(cur.lastrowid)
        return Room(
            id=room_id,
            name=name,
            description=description,
            is_private=is_private,
            created_by=created_by,
            created_at=ts,
        )

    def get_room(self, room_id: int) -> Room | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM chat_rooms WHERE id = ?", (room_id,)
            ).fetchone()
        return _room_from_row(row) if row else None

    def get_room_by_name(self, name: str) -> Room | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM chat_rooms WHERE name = ? ORDER BY id ASC LIMIT 1",
                (name,),
            ).fetchone()
        return _room_from_row(row) if row else None

    def ensure_room(self, name: str, *, description: str = "") -> Room:
        """Return the room called ``name``, creating it if needed."""
        room = self.get_room_by_name(name)
        if room is not None:
            return room
        self.log.info("Creating room name=%r", name)
        return self.create_room(name, description=description)

    def add_member(self, room_id: int, user_id: int, role: str = ROLE_MEMBER) -> None:
        try:
            with self._conn() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO room_members (room_id, user_id, role, joined_at) "
                    "VALUES (?, ?, ?, ?)",
                    (room_id, user_id, role, now_ms()),
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError("no such room or user") from e

    def remove_member(self, room_id: int, user_id: int) -> None:
        with self._conn() as conn:
            conn.execute(
                "DELETE FROM room_members WHERE room_id = ? AND user_id = ?",
                (room_id, user_id),
            )

    def join_public_room(self, room_id: int, user_id: int) -> bool:
        """Add ``user_id`` to a non-private room. False if the room is private or missing."""
        try:
            with self._conn() as conn:
                row = conn.execute(
                    "SELECT 1 FROM chat_rooms WHERE id = ? AND is_private = 0",
                    (room_id,),
                ).fetchone()
                if row is None:
                    return False
                conn.execute(
                    "INSERT OR IGNORE INTO room_members (room_id, user_id, role, joined_at) "
                    "VALUES (?, ?, ?, ?)",
                    (room_id, user_id, ROLE_MEMBER, now_ms()),
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError("no such room or user") from e
        return True

    def is_member(self, room_id: int, user_id: int) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?",
                (room_id, user_id),
            ).fetchone()
        return row is not None

    def get_member_ids(self, room_id: int) -> set[int]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT user_id FROM room_members WHERE room_id = ?", (room_id,)
            ).fetchall()
        return {int(r["user_id"]) for r in rows}

    def get_room_members(self, room_id: int) -> list[Member]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT u.id, u.username, u.display_name, rm.role, rm.joined_at "
                "FROM room_members rm JOIN users u ON rm.user_id = u.id "
                "WHERE rm.room_id = ? ORDER BY rm.joined_at ASC, rm.id ASC",
                (room_id,),
            ).fetchall()
        return [
            Member(
                user_id=int(r["id"]),
                username=str(r["username"]),
                display_name=str(r["display_name"] or r["username"]),
                role=str(r["role"]),
                joined_at=int(r["joined_at"]),
            )
            for r in rows
        ]

    def get_user_rooms(self, user_id: int) -> list[dict]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT
                    cr.id, cr.name, cr.description, cr.is_private, cr.created_at,
                    (SELECT COUNT(*) FROM room_members m2 WHERE m2.room_id = cr.id)
                        AS member_count,
                    (SELECT content FROM messages WHERE room_id = cr.id AND is_deleted = 0
                        ORDER BY created_at DESC, id DESC LIMIT 1) AS last_message,
                    (SELECT created_at FROM messages WHERE room_id = cr.id AND is_deleted = 0
                        ORDER BY created_at DESC, id DESC LIMIT 1) AS last_message_time
                FROM chat_rooms cr
                JOIN room_members rm ON cr.id = rm.room_id
                WHERE rm.user_id = ?
                ORDER BY last_message_time IS NULL, last_message_time DESC, cr.id ASC
                """,
                (user_id,),
            ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "name": str(r["name"]),
                "description": str(r["description"] or ""),
                "is_private": bool(r["is_private"]),
                "created_at": int(r["created_at"]),
                "member_count": int(r["member_count"]),
                "last_message": r["last_message"],
                "last_message_time": r["last_message_time"],
            }
            for r in rows
        ]

    # Messages

    def create_message(
        self,
        room_id: int,
        sender_id: int,
        content: str,
        message_type: str = MSG_TYPE_TEXT,
        reply_to_id: int | None = None,
    ) -> Message:
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"unknown message type {message_type!r}")
        ts = now_ms()
        try:
            with self._conn() as conn:
                if reply_to_id is not None:
                    target = conn.execute(
                        "SELECT room_id FROM messages WHERE id = ?", (reply_to_id,)
                    ).fetchone()
                    if target is None or int(target["room_id"]) != room_id:
                        raise ValidationError("reply target is not in this room")
                cur = conn.execute(
                    "INSERT INTO messages (room_id, sender_id, content, message_type, "
                    "reply_to_id, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (room_id, sender_id, content, message_type, reply_to_id, ts),
                )
                message_id = int(cur.lastrowid)
        except sqlite3.IntegrityError as e:
            raise StoreUnavailable(f"message rejected by store: {e}") from e
        return Message(
            id=message_id,
            room_id=room_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            reply_to_id=reply_to_id,
            created_at=ts,
        )

    def get_message(self, message_id: int) -> Message | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        return _message_from_row(row) if row else None

    def get_room_messages(
        self, room_id: int, limit: int = 50, offset: int = 0
    ) -> list[Message]:
        """Return a page of live messages in chronological order.

        Pages are selected newest-first (offset 0 is the most recent page) and
        then reversed for display.
        """
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE room_id = ? AND is_deleted = 0 "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (room_id, max(0, int(limit)), max(0, int(offset))),
            ).fetchall()
        messages = [_message_from_row(r) for r in rows]
        messages.reverse()
        return messages

    def count_room_messages(self, room_id: int) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE room_id = ?", (room_id,)
            ).fetchone()
        return int(row["n"])

    def edit_message(self, message_id: int, content: str) -> Message | None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE messages SET content = ?, edited_at = ? "
                "WHERE id = ? AND is_deleted = 0",
                (content, now_ms(), message_id),
            )
        return self.get_message(message_id)

    def soft_delete_message(self, message_id: int) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE messages SET is_deleted = 1 WHERE id = ? AND is_deleted = 0",
                (message_id,),
            )
        return cur.rowcount > 0

    def search_messages(
        self, user_id: int, query: str, room_id: int | None = None, limit: int = 20
    ) -> list[tuple[Message, str]]:
        pattern = "%" + _escape_like(query.strip()) + "%"
        sql = (
            "SELECT m.*, cr.name AS room_name FROM messages m "
            "JOIN chat_rooms cr ON m.room_id = cr.id "
            "JOIN room_members rm ON cr.id = rm.room_id "
            "WHERE rm.user_id = ? AND m.is_deleted = 0 "
            "AND m.content LIKE ? ESCAPE '\\'"
        )
        params: list[object] = [user_id, pattern]
        if room_id is not None:
            sql += " AND m.room_id = ?"
            params.append(room_id)
        sql += " ORDER BY m.created_at DESC, m.id DESC LIMIT ?"
        params.append(max(0, int(limit)))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(_message_from_row(r), str(r["room_name"])) for r in rows]


def _escape_like(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _room_from_row(row: sqlite3.Row) -> Room:
    return Room(
        id=int(row["id"]),
        name=str(row["name"]),
        description=str(row["description"] or ""),
        is_private=bool(row["is_private"]),
        created_by=row["created_by"],
        created_at=int(row["created_at"]),
    )


def _user_from_row(row: sqlite3.Row) -> UserIdentity:
    return UserIdentity(
        id=int(row["id"]),
        username=str(row["username"]),
        display_name=str(row["display_name"] or row["username"]),
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=int(row["id"]),
        room_id=int(row["room_id"]),
        sender_id=int(row["sender_id"]),
        content=str(row["content"]),
        message_type=str(row["message_type"]),
        reply_to_id=row["reply_to_id"],
        created_at=int(row["created_at"]),
        edited_at=row["edited_at"],
        is_deleted=bool(row["is_deleted"]),
    )
