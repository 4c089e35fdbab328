from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, Callable, Protocol

from .errors import DeadSubscriber

if TYPE_CHECKING:
    from .stats import StatsManager


class Transport(Protocol):
    """What a Connection needs from the underlying link."""

    def send(self, payload: bytes) -> None: ...

    def teardown(self) -> None: ...


class QueueOverflow(Exception):
    pass


class QueueClosed(Exception):
    pass


class OutboundQueue:
    """
    Bounded FIFO of encoded payloads waiting for one connection's writer.

    Items are either critical (chat messages, replies, errors) or not (typing
    and presence signals). When full, the oldest non-critical item is evicted
    to make room. A non-critical item that still does not fit is dropped. A
    critical item waits at most ``put_timeout_s`` for space and then raises
    QueueOverflow; critical items are never evicted.
    """

    def __init__(self, capacity: int, *, put_timeout_s: float = 0.0) -> None:
        self.capacity = max(1, int(capacity))
        self.put_timeout_s = max(0.0, float(put_timeout_s))
        self._items: deque[tuple[bytes, bool]] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, payload: bytes, *, critical: bool) -> bool:
        """Queue a payload. Returns False if a non-critical payload was dropped."""
        with self._cond:
            if self._closed:
                raise QueueClosed()

            if len(self._items) >= self.capacity and not self._evict_one_locked():
                if not critical:
                    self.dropped += 1
                    return False
                has_room = self._cond.wait_for(
                    lambda: self._closed or len(self._items) < self.capacity,
                    timeout=self.put_timeout_s,
                )
                if self._closed:
                    raise QueueClosed()
                if not has_room:
                    raise QueueOverflow()

            self._items.append((payload, critical))
            self._cond.notify_all()
            return True

    def _evict_one_locked(self) -> bool:
        for i, (_, critical) in enumerate(self._items):
            if not critical:
                del self._items[i]
                self.dropped += 1
                return True
        return False

    def get(self, timeout: float | None = None) -> bytes | None:
        """Next payload, or None once closed and drained (or on timeout)."""
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._closed, timeout=timeout)
            if not self._items:
                return None
            payload, _ = self._items.popleft()
            self._cond.notify_all()
            return payload

    def close(self, *, discard: bool = False) -> None:
        with self._cond:
            self._closed = True
            if discard:
                self._items.clear()
            self._cond.notify_all()


_conn_ids = itertools.count(1)


class Connection:
    """
    The connection handle shared by the Room Hubs and the Presence Registry.

    Delivery only ever enqueues; a dedicated writer thread performs the
    actual transport sends so a slow peer cannot stall a broadcast.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        queue_size: int = 256,
        enqueue_timeout_s: float = 0.25,
        label: str | None = None,
        stats: StatsManager | None = None,
        on_unhealthy: Callable[[Connection, str], None] | None = None,
    ) -> None:
        self.transport = transport
        self.id = next(_conn_ids)
        self.label = label or f"conn-{self.id}"
        self.log = logging.getLogger("roomchatd.connection")
        self.queue = OutboundQueue(queue_size, put_timeout_s=enqueue_timeout_s)
        self.stats = stats
        self.on_unhealthy = on_unhealthy

        self.user_id: int | None = None
        self.healthy = True

        self._writer: threading.Thread | None = None
        self._writer_done = False
        self._teardown_requested = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<Connection {self.label} user={self.user_id}>"

    def start(self) -> None:
        with self._lock:
            if self._writer is not None:
                return
            self._writer = threading.Thread(
                target=self._writer_loop,
                name=f"roomchatd-writer-{self.id}",
                daemon=True,
            )
            self._writer.start()

    def deliver(self, payload: bytes, *, critical: bool = True) -> bool:
        """
        Enqueue an encoded event for this connection.

        Returns False when a non-critical event was dropped. Raises
        DeadSubscriber when the connection is closed or a critical event could
        not be queued in time; in the latter case the connection is also
        marked unhealthy and scheduled for forced disconnect.
        """
        try:
            queued = self.queue.put(payload, critical=critical)
        except QueueClosed:
            raise DeadSubscriber(self, "connection closed") from None
        except QueueOverflow:
            self.mark_unhealthy("outbound queue full")
            raise DeadSubscriber(self, "outbound queue full") from None

        if self.stats is not None:
            if queued:
                self.stats.inc("events_queued")
            else:
                self.stats.inc("events_dropped")
        return queued

    def mark_unhealthy(self, reason: str) -> None:
        with self._lock:
            if not self.healthy:
                return
            self.healthy = False
        self.log.warning("Connection unhealthy %s reason=%s", self.label, reason)
        if self.stats is not None:
            self.stats.inc("dead_subscribers")
        self.queue.close(discard=True)
        self._request_teardown()
        if self.on_unhealthy is not None:
            try:
                self.on_unhealthy(self, reason)
            except Exception:
                self.log.exception("on_unhealthy callback failed %s", self.label)

    def close(self, *, flush: bool = True) -> None:
        """Stop accepting events. Queued events are still written if ``flush``."""
        self.queue.close(discard=not flush)

    def disconnect(self) -> None:
        """Flush what is queued, then tear the transport down."""
        self.queue.close(discard=False)
        self._request_teardown()

    def _request_teardown(self) -> None:
        with self._lock:
            if self._teardown_requested:
                return
            self._teardown_requested = True
            writer_gone = self._writer is None or self._writer_done
        if writer_gone:
            # No writer to do it; never tear down on the caller's thread, which
            # may be in the middle of a broadcast.
            threading.Thread(
                target=self._teardown_transport,
                name=f"roomchatd-teardown-{self.id}",
                daemon=True,
            ).start()

    def _teardown_transport(self) -> None:
        try:
            self.transport.teardown()
        except Exception:
            self.log.debug("Teardown failed %s", self.label, exc_info=True)

    def _writer_loop(self) -> None:
        while True:
            payload = self.queue.get()
            if payload is None:
                break
            try:
                self.transport.send(payload)
            except Exception as e:
                self.log.warning(
                    "Send failed %s bytes=%s err=%s", self.label, len(payload), e
                )
                self.mark_unhealthy(f"send failed: {e}")
                break
            if self.stats is not None:
                self.stats.inc("bytes_out", len(payload))
                self.stats.inc("pkts_out")

        with self._lock:
            self._writer_done = True
            teardown = self._teardown_requested
        if teardown:
            self._teardown_transport()
