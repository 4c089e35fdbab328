from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Any

import pytest

from roomchatd.auth import StoreAuthService, hash_password
from roomchatd.codec import decode
from roomchatd.config import HubRuntimeConfig
from roomchatd.connection import Connection
from roomchatd.constants import K_T
from roomchatd.dispatcher import MessageDispatcher
from roomchatd.models import Room, UserIdentity
from roomchatd.presence import PresenceRegistry
from roomchatd.rooms import RoomHubs
from roomchatd.session import Session, SessionManager
from roomchatd.stats import StatsManager
from roomchatd.store import SqliteMessageStore

PASSWORD = "correct horse"


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.sent_event = threading.Event()
        self.torn_down = threading.Event()
        self.fail_sends = False

    def send(self, payload: bytes) -> None:
        if self.fail_sends:
            raise OSError("link is gone")
        self.sent.append(payload)
        self.sent_event.set()

    def teardown(self) -> None:
        self.torn_down.set()


def drain(conn: Connection) -> list[dict]:
    """Decode everything queued on a connection that has no writer thread."""
    out: list[dict] = []
    while True:
        payload = conn.queue.get(timeout=0)
        if payload is None:
            return out
        out.append(decode(payload))


def types_of(envs: list[dict]) -> list[int]:
    return [e[K_T] for e in envs]


def make_user(store: SqliteMessageStore, username: str) -> UserIdentity:
    # Low iteration count keeps the suite fast.
    return store.create_user(username, hash_password(PASSWORD, iters=1000))


@dataclass
class Chat:
    config: HubRuntimeConfig
    store: SqliteMessageStore
    auth: StoreAuthService
    hubs: RoomHubs
    presence: PresenceRegistry
    sessions: SessionManager
    stats: StatsManager
    dispatcher: MessageDispatcher

    def connect(self) -> Session:
        conn = Connection(
            FakeTransport(),
            queue_size=self.config.outbound_queue_size,
            enqueue_timeout_s=self.config.enqueue_timeout_s,
            stats=self.stats,
        )
        session = Session(
            conn,
            self.dispatcher.run_effect,
            typing_timeout_s=self.config.typing_timeout_s,
        )
        self.sessions.add(session)
        return session

    def login(self, username: str) -> Session:
        session = self.connect()
        user = self.dispatcher.authenticate(
            session, {"username": username, "password": PASSWORD}
        )
        assert user is not None
        drain(session.handle)
        return session


def build_chat(store: SqliteMessageStore, **overrides: Any) -> Chat:
    config = replace(HubRuntimeConfig(), **overrides)
    stats = StatsManager()
    hubs = RoomHubs(stats)
    presence = PresenceRegistry()
    auth = StoreAuthService(store, token_ttl_s=config.session_token_ttl_s)
    sessions = SessionManager(
        rate_limit_msgs_per_minute=config.rate_limit_msgs_per_minute
    )
    dispatcher = MessageDispatcher(
        store=store,
        auth=auth,
        hubs=hubs,
        presence=presence,
        config=config,
        stats=stats,
        sessions=sessions,
    )
    return Chat(
        config=config,
        store=store,
        auth=auth,
        hubs=hubs,
        presence=presence,
        sessions=sessions,
        stats=stats,
        dispatcher=dispatcher,
    )


@pytest.fixture
def store():
    s = SqliteMessageStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def chat(store) -> Chat:
    return build_chat(store)


@pytest.fixture
def fun_friday(store) -> Room:
    """Fun Friday Group with alice and bob as members; carol is not a member."""
    alice = make_user(store, "alice")
    bob = make_user(store, "bob")
    make_user(store, "carol")
    room = store.ensure_room("Fun Friday Group", description="Fun Friday Group Chat")
    store.add_member(room.id, alice.id, "admin")
    store.add_member(room.id, bob.id)
    return room
