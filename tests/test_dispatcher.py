import threading

import pytest

from roomchatd.constants import (
    K_BODY,
    K_ROOM,
    K_T,
    T_ERROR,
    T_JOINED,
    T_LEFT,
    T_NEW_MESSAGE,
    T_USER_OFFLINE,
    T_USER_ONLINE,
    T_USER_TYPING,
)
from roomchatd.codec import decode
from roomchatd.errors import (
    AuthError,
    EmptyMessage,
    Forbidden,
    StoreUnavailable,
    ValidationError,
)
from roomchatd.session import SessionState

from conftest import build_chat, drain, types_of


def _join(chat, session, room_id: int) -> None:
    assert chat.dispatcher.join_room(session, room_id)
    drain(session.handle)


def test_fun_friday_group(chat, fun_friday) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    c = chat.login("carol")

    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    assert not chat.dispatcher.join_room(c, fun_friday.id)
    [err] = drain(c.handle)
    assert err[K_T] == T_ERROR
    assert err[K_BODY]["code"] == "forbidden"
    assert c.state is SessionState.AUTHENTICATED

    msg = chat.dispatcher.send_message(a, fun_friday.id, "Hi Fun Friday!")

    [to_b] = drain(b.handle)
    assert to_b[K_T] == T_NEW_MESSAGE
    assert to_b[K_ROOM] == fun_friday.id
    assert to_b[K_BODY]["id"] == msg.id
    assert to_b[K_BODY]["content"] == "Hi Fun Friday!"
    assert to_b[K_BODY]["sender"]["username"] == "alice"

    # Echoed to the sender by default.
    assert types_of(drain(a.handle)) == [T_NEW_MESSAGE]
    assert drain(c.handle) == []

    with pytest.raises(Forbidden):
        chat.dispatcher.send_message(c, fun_friday.id, "let me in")
    assert chat.store.count_room_messages(fun_friday.id) == 1


def test_empty_message_is_not_persisted(chat, fun_friday) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    with pytest.raises(EmptyMessage):
        chat.dispatcher.send_message(a, fun_friday.id, "   \n ")
    with pytest.raises(ValidationError):
        chat.dispatcher.send_message(a, fun_friday.id, "hi", message_type="video")

    assert chat.store.count_room_messages(fun_friday.id) == 0
    assert drain(b.handle) == []


def test_store_failure_means_no_broadcast(chat, fun_friday, monkeypatch) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    def unavailable(*args, **kwargs):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(chat.store, "create_message", unavailable)
    with pytest.raises(StoreUnavailable):
        chat.dispatcher.send_message(a, fun_friday.id, "lost")

    assert drain(a.handle) == []
    assert drain(b.handle) == []


def test_message_is_persisted_before_broadcast(chat, fun_friday, monkeypatch) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    seen_in_store: list[int] = []
    real_broadcast = chat.hubs.broadcast

    def checking_broadcast(room_id, event, **kwargs):
        if event[K_T] == T_NEW_MESSAGE:
            stored = chat.store.get_message(event[K_BODY]["id"])
            seen_in_store.append(stored.id)
        return real_broadcast(room_id, event, **kwargs)

    monkeypatch.setattr(chat.hubs, "broadcast", checking_broadcast)
    msg = chat.dispatcher.send_message(a, fun_friday.id, "durable")
    assert seen_in_store == [msg.id]


def test_send_to_room_without_live_subscribers(chat, fun_friday) -> None:
    a = chat.login("alice")
    # Member of the room but not joined: the message is stored, nobody is told.
    msg = chat.dispatcher.send_message(a, fun_friday.id, "anyone here?")
    assert chat.store.get_message(msg.id).content == "anyone here?"
    assert drain(a.handle) == []


def test_echo_disabled(store, fun_friday) -> None:
    chat = build_chat(store, echo_to_sender=False)
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    chat.dispatcher.send_message(a, fun_friday.id, "quiet")
    assert drain(a.handle) == []
    assert types_of(drain(b.handle)) == [T_NEW_MESSAGE]


def test_typing_is_relayed_and_expires(store, fun_friday) -> None:
    chat = build_chat(store, typing_timeout_s=0.1)
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    chat.dispatcher.typing_start(a, fun_friday.id)
    started = decode(b.handle.queue.get(timeout=2.0))
    assert started[K_T] == T_USER_TYPING
    assert started[K_BODY] == {"user_id": a.user.id, "username": "alice", "is_typing": True}

    # No explicit stop: the indicator times out on its own.
    stopped = decode(b.handle.queue.get(timeout=2.0))
    assert stopped[K_T] == T_USER_TYPING
    assert stopped[K_BODY]["is_typing"] is False

    # The typist never hears about themselves.
    assert drain(a.handle) == []


def test_sending_a_message_clears_typing(chat, fun_friday) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    chat.dispatcher.typing_start(a, fun_friday.id)
    chat.dispatcher.send_message(a, fun_friday.id, "done typing")

    envs = drain(b.handle)
    assert types_of(envs) == [T_USER_TYPING, T_NEW_MESSAGE, T_USER_TYPING]
    assert envs[-1][K_BODY]["is_typing"] is False
    assert a.pending_typing_timers() == []


def test_typing_requires_join(chat, fun_friday) -> None:
    a = chat.login("alice")
    chat.dispatcher.typing_start(a, fun_friday.id)
    [err] = drain(a.handle)
    assert err[K_T] == T_ERROR
    assert err[K_BODY]["code"] == "validation_error"


def test_leave_room(chat, fun_friday) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    chat.dispatcher.leave_room(b, fun_friday.id)
    assert types_of(drain(b.handle)) == [T_LEFT]
    assert b.state is SessionState.AUTHENTICATED

    chat.dispatcher.send_message(a, fun_friday.id, "bye bob")
    assert drain(b.handle) == []


def test_removed_member_stops_receiving(chat, fun_friday) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    chat.store.remove_member(fun_friday.id, b.user.id)
    chat.dispatcher.send_message(a, fun_friday.id, "members only")

    assert types_of(drain(b.handle)) == [T_LEFT]
    assert fun_friday.id not in b.rooms
    assert b.state is SessionState.AUTHENTICATED
    assert chat.hubs.subscribers(fun_friday.id) == [a.handle]
    assert types_of(drain(a.handle)) == [T_NEW_MESSAGE]

    chat.dispatcher.send_message(a, fun_friday.id, "still members only")
    assert drain(b.handle) == []


def test_removed_member_without_tracked_session(store, fun_friday) -> None:
    chat = build_chat(store)
    chat.dispatcher.sessions = None
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)

    store.remove_member(fun_friday.id, b.user.id)
    chat.dispatcher.send_message(a, fun_friday.id, "members only")

    assert drain(b.handle) == []
    assert b.handle not in chat.hubs.subscribers(fun_friday.id)


def test_removed_member_cannot_send(chat, fun_friday) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)
    chat.dispatcher.send_message(a, fun_friday.id, "before")
    drain(a.handle)
    drain(b.handle)

    chat.store.remove_member(fun_friday.id, b.user.id)
    with pytest.raises(Forbidden):
        chat.dispatcher.send_message(b, fun_friday.id, "after")

    assert chat.store.count_room_messages(fun_friday.id) == 1
    assert drain(a.handle) == []


def test_join_twice_is_idempotent(chat, fun_friday) -> None:
    a = chat.login("alice")
    chat.dispatcher.join_room(a, fun_friday.id)
    chat.dispatcher.join_room(a, fun_friday.id)
    assert types_of(drain(a.handle)) == [T_JOINED, T_JOINED]
    assert chat.hubs.subscribers(fun_friday.id) == [a.handle]


def test_room_limit(store, fun_friday) -> None:
    chat = build_chat(store, max_rooms_per_session=1)
    alice = store.get_user_by_username("alice")
    other = store.create_room("Other")
    store.add_member(other.id, alice.id)

    a = chat.login("alice")
    _join(chat, a, fun_friday.id)
    with pytest.raises(ValidationError):
        chat.dispatcher.join_room(a, other.id)


def test_join_public_room(chat, fun_friday) -> None:
    a = chat.login("alice")
    c = chat.login("carol")
    _join(chat, a, fun_friday.id)

    assert chat.dispatcher.join_public_room(c, fun_friday.id)
    assert types_of(drain(c.handle)) == [T_JOINED]
    assert fun_friday.id in c.rooms

    chat.dispatcher.send_message(c, fun_friday.id, "hello from carol")
    assert types_of(drain(a.handle)) == [T_NEW_MESSAGE]


def test_join_public_room_rejects_private(chat, store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    hidden = store.create_room("Staff", created_by=alice.id, is_private=True)
    store.add_member(hidden.id, alice.id)
    c = chat.login("carol")

    assert not chat.dispatcher.join_public_room(c, hidden.id)
    [err] = drain(c.handle)
    assert err[K_BODY]["code"] == "forbidden"
    assert not store.is_member(hidden.id, c.user.id)
    assert c.handle not in chat.hubs.subscribers(hidden.id)


def test_join_public_room_respects_room_limit(store, fun_friday) -> None:
    chat = build_chat(store, max_rooms_per_session=1)
    other = store.create_room("Other")
    c = chat.login("carol")
    store.add_member(other.id, c.user.id)
    _join(chat, c, other.id)

    with pytest.raises(ValidationError):
        chat.dispatcher.join_public_room(c, fun_friday.id)
    assert not store.is_member(fun_friday.id, c.user.id)


def test_disconnect_cleans_up(chat, fun_friday) -> None:
    a = chat.login("alice")
    b = chat.login("bob")
    _join(chat, a, fun_friday.id)
    _join(chat, b, fun_friday.id)
    chat.dispatcher.typing_start(b, fun_friday.id)
    drain(a.handle)

    chat.dispatcher.close_session(b, "link closed")

    assert b.state is SessionState.CLOSED
    assert b.handle not in chat.hubs.subscribers(fun_friday.id)
    assert not chat.presence.is_online(b.user.id)
    assert b.pending_typing_timers() == []

    [offline] = drain(a.handle)
    assert offline[K_T] == T_USER_OFFLINE
    assert offline[K_BODY]["username"] == "bob"

    # Cleanup may run again from another path.
    chat.dispatcher.close_session(b, "link closed")
    assert drain(a.handle) == []


def test_presence_is_announced_to_joined_members(chat, fun_friday) -> None:
    a = chat.login("alice")
    _join(chat, a, fun_friday.id)

    b = chat.login("bob")
    [online] = drain(a.handle)
    assert online[K_T] == T_USER_ONLINE
    assert online[K_BODY] == {"user_id": b.user.id, "username": "bob"}

    # A second connection for bob is not a transition.
    chat.login("bob")
    assert drain(a.handle) == []


def test_user_stays_online_while_another_connection_is_open(chat, fun_friday) -> None:
    a = chat.login("alice")
    _join(chat, a, fun_friday.id)
    b1 = chat.login("bob")
    b2 = chat.login("bob")
    drain(a.handle)

    chat.dispatcher.close_session(b1, "link closed")
    assert chat.presence.is_online(b2.user.id)
    assert drain(a.handle) == []

    chat.dispatcher.close_session(b2, "link closed")
    assert types_of(drain(a.handle)) == [T_USER_OFFLINE]


def test_reads(chat, fun_friday) -> None:
    a = chat.login("alice")
    c = chat.login("carol")
    for text in ("one", "two", "pizza three"):
        chat.dispatcher.send_message(a, fun_friday.id, text)

    history = chat.dispatcher.get_history(a, fun_friday.id, limit=2)
    assert [m["content"] for m in history] == ["two", "pizza three"]
    assert history[0]["sender"]["username"] == "alice"

    members = {m["username"]: m for m in chat.dispatcher.get_members(a, fun_friday.id)}
    assert set(members) == {"alice", "bob"}
    assert members["alice"]["online"] is True
    assert members["bob"]["online"] is False

    [hit] = chat.dispatcher.search_messages(a, "pizza")
    assert hit["content"] == "pizza three"
    assert hit["room_name"] == "Fun Friday Group"

    [room] = chat.dispatcher.get_rooms(a)
    assert room["id"] == fun_friday.id

    with pytest.raises(Forbidden):
        chat.dispatcher.get_history(c, fun_friday.id)
    with pytest.raises(Forbidden):
        chat.dispatcher.get_members(c, fun_friday.id)
    with pytest.raises(Forbidden):
        chat.dispatcher.search_messages(c, "pizza", fun_friday.id)
    assert chat.dispatcher.search_messages(c, "pizza") == []
    assert chat.dispatcher.get_rooms(c) == []


def test_history_limits(store, fun_friday) -> None:
    chat = build_chat(store, history_max_limit=3)
    a = chat.login("alice")
    for i in range(5):
        chat.dispatcher.send_message(a, fun_friday.id, f"m{i}")

    assert len(chat.dispatcher.get_history(a, fun_friday.id, limit=100)) == 3
    assert len(chat.dispatcher.get_history(a, fun_friday.id, limit=0)) == 1
    with pytest.raises(ValidationError):
        chat.dispatcher.get_history(a, fun_friday.id, limit="10")
    with pytest.raises(ValidationError):
        chat.dispatcher.get_history(a, fun_friday.id, offset=-1)


def test_operations_require_authentication(chat, fun_friday) -> None:
    s = chat.connect()
    with pytest.raises(AuthError):
        chat.dispatcher.join_room(s, fun_friday.id)
    with pytest.raises(AuthError):
        chat.dispatcher.send_message(s, fun_friday.id, "hello")
    with pytest.raises(AuthError):
        chat.dispatcher.get_rooms(s)


def test_failed_authentication_closes_session(chat, fun_friday) -> None:
    s = chat.connect()
    user = chat.dispatcher.authenticate(
        s, {"username": "alice", "password": "wrong"}, ref=b"req-1"
    )
    assert user is None
    assert s.state is SessionState.CLOSED

    [err] = drain(s.handle)
    assert err[K_T] == T_ERROR
    assert err[K_BODY]["code"] == "auth_error"
    assert s.handle.transport.torn_down.wait(2.0)
    assert chat.stats.get("auth_failed") == 1


def test_token_login_and_logout(chat, fun_friday) -> None:
    a = chat.login("alice")
    token = a.token
    assert token

    again = chat.connect()
    assert chat.dispatcher.authenticate(again, {"token": token}).username == "alice"
    assert again.token == token

    chat.dispatcher.logout(a)
    assert a.state is SessionState.CLOSED
    assert a.handle.transport.torn_down.wait(2.0)

    third = chat.connect()
    assert chat.dispatcher.authenticate(third, {"token": token}) is None


def test_concurrent_sends_keep_per_sender_order(chat, fun_friday) -> None:
    a1 = chat.login("alice")
    a2 = chat.login("alice")
    b = chat.login("bob")
    _join(chat, b, fun_friday.id)

    start = threading.Barrier(2)

    def spam(session, tag: str) -> None:
        start.wait()
        for i in range(20):
            chat.dispatcher.send_message(session, fun_friday.id, f"{tag}{i}")

    threads = [
        threading.Thread(target=spam, args=(a1, "x")),
        threading.Thread(target=spam, args=(a2, "y")),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ids = [e[K_BODY]["id"] for e in drain(b.handle) if e[K_T] == T_NEW_MESSAGE]
    assert len(ids) == 40
    assert ids == sorted(ids)
