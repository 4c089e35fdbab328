"""Value types shared by the store, the dispatcher and the wire layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .constants import MSG_TYPE_TEXT, ROLE_MEMBER


@dataclass(frozen=True)
class UserIdentity:
    id: int
    username: str
    display_name: str

    def to_wire(self) -> dict[str, Any]:
        return {"user_id": self.id, "username": self.username}


@dataclass(frozen=True)
class Room:
    id: int
    name: str
    description: str = ""
    is_private: bool = False
    created_by: int | None = None
    created_at: int = 0


@dataclass(frozen=True)
class Member:
    user_id: int
    username: str
    display_name: str
    role: str = ROLE_MEMBER
    joined_at: int = 0


@dataclass(frozen=True)
class Message:
    id: int
    room_id: int
    sender_id: int
    content: str
    message_type: str = MSG_TYPE_TEXT
    reply_to_id: int | None = None
    created_at: int = 0
    edited_at: int | None = None
    is_deleted: bool = False

    def to_wire(self, sender: UserIdentity | None = None) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "message_type": self.message_type,
            "reply_to_id": self.reply_to_id,
            "created_at": self.created_at,
            "edited_at": self.edited_at,
        }
        if sender is not None:
            out["sender"] = {
                "username": sender.username,
                "display_name": sender.display_name,
            }
        return out


@dataclass
class PresenceEntry:
    user_id: int
    handles: set[Any] = field(default_factory=set)
    last_seen: float = 0.0
    online: bool = False


@dataclass(frozen=True)
class PresenceTransition:
    user_id: int
    online: bool
    at: float
