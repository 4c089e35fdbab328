"""Statistics tracking and reporting for the chat hub."""

from __future__ import annotations

import threading
import time
from typing import Any


class StatsManager:
    """
    Thread-safe hub counters.

    Tracks counters for:
    - Bytes and packets in/out
    - Authentication results
    - Room joins/leaves
    - Messages persisted and broadcast
    - Outbound queue activity and dead subscribers
    - Ping/pong activity
    """

    def __init__(self) -> None:
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None
        self._lock = threading.Lock()

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_out": 0,
            "pkts_bad": 0,
            "auth_ok": 0,
            "auth_failed": 0,
            "joins": 0,
            "leaves": 0,
            "msgs_persisted": 0,
            "msgs_broadcast": 0,
            "deliveries": 0,
            "events_queued": 0,
            "events_dropped": 0,
            "dead_subscribers": 0,
            "errors_sent": 0,
            "rate_limited": 0,
            "pings_in": 0,
            "pings_out": 0,
            "pongs_in": 0,
            "pongs_out": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(
        self,
        *,
        sessions: dict[str, Any] | None = None,
        rooms: dict[str, Any] | None = None,
        presence: dict[str, Any] | None = None,
    ) -> str:
        """Format current statistics as a human-readable block of lines."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0
        c = self.snapshot()
        sessions = sessions or {}
        rooms = rooms or {}
        presence = presence or {}

        lines: list[str] = []
        lines.append(f"roomchatd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"sessions_total={sessions.get('total', 0)} "
            f"sessions_authenticated={sessions.get('authenticated', 0)} "
            f"sessions_joined={sessions.get('joined', 0)}"
        )
        lines.append(
            f"users_online={presence.get('users_online', 0)} "
            f"handles={presence.get('handles', 0)}"
        )
        lines.append(
            f"rooms={rooms.get('rooms_total', 0)} memberships={rooms.get('memberships', 0)}"
        )
        top_rooms = rooms.get("top_rooms") or []
        if top_rooms:
            lines.append("top_rooms=" + ", ".join(f"{r}:{n}" for r, n in top_rooms))

        lines.append(
            "io: pkts_in={} pkts_out={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c["pkts_in"], c["pkts_out"], c["pkts_bad"], c["bytes_in"], c["bytes_out"]
            )
        )
        lines.append(
            "auth: ok={} failed={}".format(c["auth_ok"], c["auth_failed"])
        )
        lines.append(
            "events: joins={} leaves={} msgs_persisted={} msgs_broadcast={} "
            "deliveries={} errors_sent={} rate_limited={}".format(
                c["joins"],
                c["leaves"],
                c["msgs_persisted"],
                c["msgs_broadcast"],
                c["deliveries"],
                c["errors_sent"],
                c["rate_limited"],
            )
        )
        lines.append(
            "queues: queued={} dropped={} dead_subscribers={}".format(
                c["events_queued"], c["events_dropped"], c["dead_subscribers"]
            )
        )
        lines.append(
            "pings: in={} out={} pongs: in={} out={} announces={}".format(
                c["pings_in"],
                c["pings_out"],
                c["pongs_in"],
                c["pongs_out"],
                c["announces"],
            )
        )
        return "\n".join(lines)
