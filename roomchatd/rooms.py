"""Live room subscriptions and fan-out.

This module handles:
- The per-room set of subscribed connection handles
- Broadcasting encoded events to those handles
- Retiring hubs that no longer have subscribers

Room membership itself lives in the message store; a hub only knows who is
connected right now. Nothing here is persisted.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from .codec import encode
from .errors import DeadSubscriber

if TYPE_CHECKING:
    from .connection import Connection
    from .stats import StatsManager


class RoomHub:
    """Broadcast group for one room, guarded by its own lock."""

    def __init__(self, room_id: int) -> None:
        self.room_id = room_id
        self._subs: dict[Connection, int] = {}
        self._lock = threading.Lock()
        self.retired = False

    def add(self, handle: Connection, user_id: int) -> bool | None:
        """Add a handle. Returns None if the hub was retired, else whether it was new."""
        with self._lock:
            if self.retired:
                return None
            if handle in self._subs:
                return False
            self._subs[handle] = user_id
            return True

    def remove(self, handle: Connection) -> tuple[bool, bool]:
        """Remove a handle. Returns (removed, now_retired)."""
        with self._lock:
            removed = self._subs.pop(handle, None) is not None
            if not self._subs and not self.retired:
                self.retired = True
                return removed, True
            return removed, False

    def snapshot(self) -> list[tuple[Connection, int]]:
        with self._lock:
            return list(self._subs.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._subs


class RoomHubs:
    """Directory of active RoomHubs keyed by room id.

    The directory lock and a hub's lock are never held at the same time.
    """

    def __init__(self, stats: StatsManager | None = None) -> None:
        self.log = logging.getLogger("roomchatd.rooms")
        self.stats = stats
        self._hubs: dict[int, RoomHub] = {}
        self._lock = threading.Lock()

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def _get(self, room_id: int) -> RoomHub | None:
        with self._lock:
            return self._hubs.get(room_id)

    def _get_or_create(self, room_id: int) -> RoomHub:
        with self._lock:
            hub = self._hubs.get(room_id)
            if hub is None:
                hub = RoomHub(room_id)
                self._hubs[room_id] = hub
            return hub

    def _discard_retired(self, hub: RoomHub) -> None:
        with self._lock:
            if self._hubs.get(hub.room_id) is hub:
                self._hubs.pop(hub.room_id, None)

    def join(self, room_id: int, handle: Connection, user_id: int) -> bool:
        """
        Subscribe ``handle`` to ``room_id``.

        The caller must already have checked store membership. Joining twice
        is a no-op; returns True only for a new subscription.
        """
        while True:
            hub = self._get_or_create(room_id)
            added = hub.add(handle, user_id)
            if added is None:
                # Lost a race with the last subscriber leaving; start over.
                self._discard_retired(hub)
                continue
            if added:
                self.log.debug(
                    "Subscribed room=%s handle=%s user=%s", room_id, handle, user_id
                )
            return added

    def leave(self, room_id: int, handle: Connection) -> bool:
        hub = self._get(room_id)
        if hub is None:
            return False
        removed, retired = hub.remove(handle)
        if retired:
            self._discard_retired(hub)
        if removed:
            self.log.debug("Unsubscribed room=%s handle=%s", room_id, handle)
        return removed

    def drop_handle(self, handle: Connection) -> list[int]:
        """Remove a handle from every hub. Returns the rooms it was in."""
        with self._lock:
            hubs = list(self._hubs.values())
        left: list[int] = []
        for hub in hubs:
            if handle not in hub:
                continue
            removed, retired = hub.remove(handle)
            if retired:
                self._discard_retired(hub)
            if removed:
                left.append(hub.room_id)
        return left

    def subscribers(self, room_id: int) -> list[Connection]:
        hub = self._get(room_id)
        if hub is None:
            return []
        return [h for h, _ in hub.snapshot()]

    def subscriptions(self, room_id: int) -> list[tuple[Connection, int]]:
        """(handle, user_id) pairs currently subscribed to ``room_id``."""
        hub = self._get(room_id)
        if hub is None:
            return []
        return hub.snapshot()

    def subscribed_user_ids(self, room_id: int) -> set[int]:
        hub = self._get(room_id)
        if hub is None:
            return set()
        return {uid for _, uid in hub.snapshot()}

    def rooms_for(self, handle: Connection) -> list[int]:
        with self._lock:
            hubs = list(self._hubs.values())
        return sorted(h.room_id for h in hubs if handle in h)

    def broadcast(
        self,
        room_id: int,
        event: dict[int, Any],
        *,
        exclude: Connection | set[Connection] | None = None,
        critical: bool = True,
    ) -> int:
        """
        Deliver ``event`` to every subscriber of ``room_id`` except ``exclude``.

        The subscriber list is copied and the hub lock released before any
        delivery. A subscriber that cannot take the event is dropped from the
        room; the broadcast itself never fails because of one peer. Returns
        the number of subscribers the event was queued for.
        """
        hub = self._get(room_id)
        if hub is None:
            return 0
        targets = hub.snapshot()
        if not targets:
            return 0

        if exclude is None:
            excluded: set[Connection] = set()
        elif isinstance(exclude, set):
            excluded = exclude
        else:
            excluded = {exclude}

        payload = encode(event)
        delivered = 0
        for handle, _ in targets:
            if handle in excluded:
                continue
            try:
                if handle.deliver(payload, critical=critical):
                    delivered += 1
            except DeadSubscriber as e:
                self.log.info(
                    "Dropping dead subscriber room=%s handle=%s reason=%s",
                    room_id,
                    handle,
                    e.reason,
                )
                self.leave(room_id, handle)
            except Exception:
                self.log.exception(
                    "Delivery failed room=%s handle=%s", room_id, handle
                )
                self.leave(room_id, handle)

        self._inc("deliveries", delivered)
        return delivered

    def clear_all(self) -> None:
        with self._lock:
            self._hubs.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            hubs = list(self._hubs.values())
        sizes = [(h.room_id, len(h)) for h in hubs]
        top_rooms = sorted(sizes, key=lambda x: (-x[1], x[0]))[:5]
        return {
            "rooms_total": len(sizes),
            "memberships": sum(n for _, n in sizes),
            "top_rooms": top_rooms,
        }
