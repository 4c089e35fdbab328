"""Online/offline state per user.

Each user maps to the set of connection handles currently open for them. The
first handle flips the user online and the last one flips them offline; that
decision and the handle-set mutation happen under the same shard lock, so two
racing connects can never both report "online".

Listeners run outside the shard lock but under a per-shard emit lock taken
before it. A user's transitions therefore reach listeners in the order they
were decided, even when a listener is slow.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from .models import PresenceEntry, PresenceTransition

if TYPE_CHECKING:
    from .connection import Connection

PresenceListener = Callable[[PresenceTransition], None]


class PresenceRegistry:
    def __init__(self, *, shards: int = 16) -> None:
        self.log = logging.getLogger("roomchatd.presence")
        self._shards = max(1, int(shards))
        self._locks = [threading.Lock() for _ in range(self._shards)]
        self._emit_locks = [threading.RLock() for _ in range(self._shards)]
        self._entries: list[dict[int, PresenceEntry]] = [
            {} for _ in range(self._shards)
        ]
        self._listeners: list[PresenceListener] = []

    def add_listener(self, listener: PresenceListener) -> None:
        self._listeners.append(listener)

    def _shard(self, user_id: int) -> int:
        return hash(user_id) % self._shards

    def _emit(self, transition: PresenceTransition) -> None:
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:
                self.log.exception(
                    "Presence listener failed user=%s online=%s",
                    transition.user_id,
                    transition.online,
                )

    def register_connection(self, user_id: int, handle: Connection) -> bool:
        """Add a handle. Returns True if this made the user go online."""
        i = self._shard(user_id)
        now = time.time()
        with self._emit_locks[i]:
            with self._locks[i]:
                entry = self._entries[i].get(user_id)
                if entry is None:
                    entry = PresenceEntry(user_id=user_id)
                    self._entries[i][user_id] = entry
                entry.handles.add(handle)
                entry.last_seen = now
                went_online = not entry.online
                entry.online = True

            if went_online:
                self.log.info("User online user=%s", user_id)
                self._emit(PresenceTransition(user_id=user_id, online=True, at=now))
        return went_online

    def unregister_connection(self, user_id: int, handle: Connection) -> bool:
        """Remove a handle. Returns True if the user has no handles left."""
        i = self._shard(user_id)
        now = time.time()
        with self._emit_locks[i]:
            with self._locks[i]:
                entry = self._entries[i].get(user_id)
                if entry is None or handle not in entry.handles:
                    return False
                entry.handles.discard(handle)
                went_offline = entry.online and not entry.handles
                if went_offline:
                    entry.online = False
                    entry.last_seen = now

            if went_offline:
                self.log.info("User offline user=%s", user_id)
                self._emit(PresenceTransition(user_id=user_id, online=False, at=now))
        return went_offline

    def touch(self, user_id: int) -> None:
        i = self._shard(user_id)
        with self._locks[i]:
            entry = self._entries[i].get(user_id)
            if entry is not None:
                entry.last_seen = time.time()

    def is_online(self, user_id: int) -> bool:
        i = self._shard(user_id)
        with self._locks[i]:
            entry = self._entries[i].get(user_id)
            return bool(entry and entry.online)

    def last_seen(self, user_id: int) -> float | None:
        i = self._shard(user_id)
        with self._locks[i]:
            entry = self._entries[i].get(user_id)
            return entry.last_seen if entry is not None else None

    def handles(self, user_id: int) -> set[Connection]:
        i = self._shard(user_id)
        with self._locks[i]:
            entry = self._entries[i].get(user_id)
            return set(entry.handles) if entry is not None else set()

    def online_user_ids(self) -> set[int]:
        out: set[int] = set()
        for i in range(self._shards):
            with self._locks[i]:
                out.update(uid for uid, e in self._entries[i].items() if e.online)
        return out

    def clear_all(self) -> None:
        for i in range(self._shards):
            with self._locks[i]:
                self._entries[i].clear()

    def get_stats(self) -> dict[str, Any]:
        online = 0
        handles = 0
        for i in range(self._shards):
            with self._locks[i]:
                for e in self._entries[i].values():
                    if e.online:
                        online += 1
                    handles += len(e.handles)
        return {"users_online": online, "handles": handles}
