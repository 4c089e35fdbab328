from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from .auth import StoreAuthService
from .codec import encode
from .config import HubRuntimeConfig
from .connection import Connection
from .constants import T_PING
from .dispatcher import MessageDispatcher
from .envelope import now_ms
from .paths import default_database_path
from .presence import PresenceRegistry
from .rooms import RoomHubs
from .router import MessageRouter
from .session import Session, SessionManager
from .stats import StatsManager
from .store import MessageStore, SqliteMessageStore
from .transport import LinkTransport, fmt_link_id
from .util import expand_path


class HubService:
    def __init__(
        self, config: HubRuntimeConfig, *, store: MessageStore | None = None
    ) -> None:
        self.config = config
        self.log = logging.getLogger("roomchatd.hub")
        self._shutdown = threading.Event()

        self.stats = StatsManager()
        self.presence = PresenceRegistry()
        self.hubs = RoomHubs(self.stats)
        self.session_manager = SessionManager(
            rate_limit_msgs_per_minute=int(config.rate_limit_msgs_per_minute)
        )

        self.store = store
        self.auth: StoreAuthService | None = None
        self.dispatcher: MessageDispatcher | None = None
        self.router: MessageRouter | None = None
        self.default_room_id: int | None = None

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        # Link -> Session; the SessionManager itself is keyed by Connection.
        self._links: dict[RNS.Link, Session] = {}
        self._links_lock = threading.Lock()

        self._ping_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None
        self._stats_thread: threading.Thread | None = None

    def init_core(self) -> None:
        """Open the store and wire up the chat core. Safe to call once per start."""
        if self.store is None:
            path = self.config.database_path or str(default_database_path())
            self.store = SqliteMessageStore(
                expand_path(path),
                pool_size=int(self.config.db_pool_size),
                timeout_s=float(self.config.db_timeout_s),
            )

        if self.config.default_room:
            room = self.store.ensure_room(
                self.config.default_room, description="Default group chat for everyone"
            )
            self.default_room_id = room.id

        self.auth = StoreAuthService(
            self.store, token_ttl_s=float(self.config.session_token_ttl_s)
        )
        self.dispatcher = MessageDispatcher(
            store=self.store,
            auth=self.auth,
            hubs=self.hubs,
            presence=self.presence,
            config=self.config,
            stats=self.stats,
            sessions=self.session_manager,
            src=self.identity.hash if self.identity is not None else b"",
        )
        self.router = MessageRouter(
            self.dispatcher, self.session_manager, stats=self.stats
        )

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        self.init_core()

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy max_rooms=%s max_message_chars=%s rate_limit_msgs_per_minute=%s "
            "typing_timeout_s=%s echo_to_sender=%s",
            self.config.max_rooms_per_session,
            self.config.max_message_chars,
            self.config.rate_limit_msgs_per_minute,
            self.config.typing_timeout_s,
            self.config.echo_to_sender,
        )

        self._ensure_worker_threads()

    def _ensure_worker_threads(self) -> None:
        if self._announce_thread is None or not self._announce_thread.is_alive():
            if self.config.announce_period_s and float(self.config.announce_period_s) > 0:
                self._announce_thread = threading.Thread(
                    target=self._announce_loop, name="roomchatd-announce", daemon=True
                )
                self._announce_thread.start()

        if self._ping_thread is None or not self._ping_thread.is_alive():
            if (self.config.ping_interval_s and float(self.config.ping_interval_s) > 0) or (
                self.config.idle_timeout_s and float(self.config.idle_timeout_s) > 0
            ):
                self._ping_thread = threading.Thread(
                    target=self._ping_loop, name="roomchatd-ping", daemon=True
                )
                self._ping_thread.start()

        if self._stats_thread is None or not self._stats_thread.is_alive():
            if self.config.stats_log_interval_s and float(self.config.stats_log_interval_s) > 0:
                self._stats_thread = threading.Thread(
                    target=self._stats_loop, name="roomchatd-stats", daemon=True
                )
                self._stats_thread.start()

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "roomchat", "v": 1, "hub": self.config.hub_name})
            )
            self.stats.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if self._shutdown.wait(period if period > 0 else 1.0):
                break
            if period > 0:
                self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        with self._links_lock:
            self._links.clear()
        sessions = self.session_manager.clear_all()

        for session in sessions:
            if self.dispatcher is not None:
                self.dispatcher.close_session(session, "hub shutting down")
            session.handle.disconnect()

        self.hubs.clear_all()
        self.presence.clear_all()
        self.log.info("%s", self.format_stats())

        if self.store is not None and hasattr(self.store, "close"):
            self.store.close()

    def format_stats(self) -> str:
        return self.stats.format_stats(
            sessions=self.session_manager.get_stats(),
            rooms=self.hubs.get_stats(),
            presence=self.presence.get_stats(),
        )

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Link lifecycle

    def _on_link(self, link: RNS.Link) -> None:
        if self.dispatcher is None or self.router is None:
            link.teardown()
            return

        transport = LinkTransport(
            link,
            max_resource_bytes=int(self.config.max_resource_bytes),
            resource_timeout_s=float(self.config.resource_timeout_s),
        )
        conn = Connection(
            transport,
            queue_size=int(self.config.outbound_queue_size),
            enqueue_timeout_s=float(self.config.enqueue_timeout_s),
            label=fmt_link_id(link)[:16],
            stats=self.stats,
            on_unhealthy=self._on_unhealthy,
        )
        session = Session(
            conn,
            self.dispatcher.run_effect,
            typing_timeout_s=float(self.config.typing_timeout_s),
        )

        self.session_manager.add(session)
        with self._links_lock:
            self._links[link] = session
        conn.start()

        link.set_packet_callback(lambda data, pkt: self._on_packet(session, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        transport.accept_inbound(lambda data: self._on_packet(session, data))

        self.log.info("Link established link_id=%s", fmt_link_id(link))

    def _on_packet(self, session: Session, data: bytes) -> None:
        if self.router is None:
            return
        self.router.route_packet(session, data)

    def _on_close(self, link: RNS.Link) -> None:
        with self._links_lock:
            session = self._links.pop(link, None)
        if session is None:
            return
        self.close_session(session, "link closed")

    def close_session(self, session: Session, reason: str) -> None:
        user = session.user
        rooms = len(session.rooms)
        if self.dispatcher is not None:
            self.dispatcher.close_session(session, reason)
        self.session_manager.remove(session.handle)
        session.handle.close(flush=False)

        self.log.info(
            "Session closed %s user=%s rooms=%s reason=%s",
            session.handle,
            user.username if user is not None else None,
            rooms,
            reason,
        )

    def _on_unhealthy(self, handle: Connection, reason: str) -> None:
        # The transport teardown already scheduled by the Connection ends in
        # _on_close, which runs the session cleanup.
        self.log.info("Forcing disconnect %s reason=%s", handle, reason)

    # Worker loops

    def _ping_loop(self) -> None:
        while not self._shutdown.is_set():
            interval = float(self.config.ping_interval_s)
            idle = float(self.config.idle_timeout_s)

            tick = interval if interval > 0 else max(1.0, idle / 4.0)
            if self._shutdown.wait(tick):
                break
            self._check_liveness()

    def _check_liveness(self, now: float | None = None) -> None:
        """Drop idle or unresponsive sessions and ping the rest."""
        if self.dispatcher is None:
            return
        interval = float(self.config.ping_interval_s)
        timeout = float(self.config.ping_timeout_s)
        idle = float(self.config.idle_timeout_s)
        if now is None:
            now = time.monotonic()

        to_drop: list[tuple[Session, str]] = []
        to_ping: list[Session] = []

        for session in self.session_manager.all():
            if idle > 0 and (now - session.last_activity) > idle:
                to_drop.append((session, "idle timeout"))
                continue
            if interval <= 0 or not session.snapshot.is_live:
                continue

            awaiting = session.awaiting_pong
            if timeout > 0 and awaiting is not None and (now - awaiting) > timeout:
                to_drop.append((session, "ping timeout"))
                continue
            if awaiting is None:
                session.awaiting_pong = now
                to_ping.append(session)

        for session, reason in to_drop:
            self.log.info("Disconnecting %s reason=%s", session.handle, reason)
            session.handle.disconnect()

        for session in to_ping:
            self.stats.inc("pings_out")
            self.dispatcher.reply(session.handle, T_PING, body=now_ms())

    def _stats_loop(self) -> None:
        while not self._shutdown.is_set():
            if self._shutdown.wait(float(self.config.stats_log_interval_s)):
                break
            self.log.info("%s", self.format_stats())
