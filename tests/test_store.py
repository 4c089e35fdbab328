import pytest

from roomchatd.errors import StoreUnavailable, ValidationError
from roomchatd.store import MessageStore, SqliteMessageStore

from conftest import make_user


def test_create_user_rejects_duplicates(store) -> None:
    make_user(store, "alice")
    with pytest.raises(ValidationError):
        make_user(store, "alice")


def test_get_credentials_by_username_or_email(store) -> None:
    user = store.create_user("alice", "h", email="alice@example.org")
    by_name = store.get_credentials("alice")
    by_email = store.get_credentials("alice@example.org")
    assert by_name == (user, "h")
    assert by_email == (user, "h")
    assert store.get_credentials("nobody") is None


def test_display_name_defaults_to_username(store) -> None:
    user = make_user(store, "bob")
    assert user.display_name == "bob"
    assert store.get_user(user.id) == user


def test_membership(store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    carol = store.get_user_by_username("carol")
    assert store.is_member(fun_friday.id, alice.id)
    assert not store.is_member(fun_friday.id, carol.id)

    store.add_member(fun_friday.id, alice.id)  # already a member
    members = store.get_room_members(fun_friday.id)
    assert [m.username for m in members] == ["alice", "bob"]
    assert members[0].role == "admin"

    store.remove_member(fun_friday.id, alice.id)
    assert not store.is_member(fun_friday.id, alice.id)


def test_add_member_unknown_room(store) -> None:
    alice = make_user(store, "alice")
    with pytest.raises(ValidationError):
        store.add_member(999, alice.id)


def test_ensure_room_is_idempotent(store) -> None:
    a = store.ensure_room("Fun Friday Group")
    b = store.ensure_room("Fun Friday Group")
    assert a.id == b.id
    assert store.get_room(a.id).name == "Fun Friday Group"


def test_room_messages_are_chronological_pages(store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    ids = [
        store.create_message(fun_friday.id, alice.id, f"m{i}").id for i in range(5)
    ]

    latest = store.get_room_messages(fun_friday.id, limit=2)
    assert [m.id for m in latest] == ids[3:]

    older = store.get_room_messages(fun_friday.id, limit=2, offset=2)
    assert [m.id for m in older] == ids[1:3]

    assert store.count_room_messages(fun_friday.id) == 5


def test_soft_deleted_messages_are_hidden(store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    keep = store.create_message(fun_friday.id, alice.id, "keep me")
    gone = store.create_message(fun_friday.id, alice.id, "delete me")

    assert store.soft_delete_message(gone.id)
    assert not store.soft_delete_message(gone.id)

    history = store.get_room_messages(fun_friday.id)
    assert [m.id for m in history] == [keep.id]
    assert store.search_messages(alice.id, "delete") == []
    assert store.get_message(gone.id).is_deleted


def test_edit_message(store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    msg = store.create_message(fun_friday.id, alice.id, "teh")
    edited = store.edit_message(msg.id, "the")
    assert edited.content == "the"
    assert edited.edited_at is not None
    assert edited.created_at == msg.created_at


def test_create_message_validation(store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    with pytest.raises(ValidationError):
        store.create_message(fun_friday.id, alice.id, "x", message_type="video")

    other = store.create_room("elsewhere")
    store.add_member(other.id, alice.id)
    foreign = store.create_message(other.id, alice.id, "over here")
    with pytest.raises(ValidationError):
        store.create_message(fun_friday.id, alice.id, "re", reply_to_id=foreign.id)

    local = store.create_message(fun_friday.id, alice.id, "question")
    reply = store.create_message(fun_friday.id, alice.id, "answer", reply_to_id=local.id)
    assert reply.reply_to_id == local.id


def test_search_is_scoped_to_members(store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    carol = store.get_user_by_username("carol")
    store.create_message(fun_friday.id, alice.id, "pizza on friday?")
    store.create_message(fun_friday.id, alice.id, "100% yes")

    found = store.search_messages(alice.id, "pizza")
    assert [(m.content, name) for m, name in found] == [
        ("pizza on friday?", "Fun Friday Group")
    ]
    assert store.search_messages(carol.id, "pizza") == []

    # LIKE wildcards in the query are matched literally.
    assert [m.content for m, _ in store.search_messages(alice.id, "%")] == ["100% yes"]


def test_user_rooms_include_last_message(store, fun_friday) -> None:
    alice = store.get_user_by_username("alice")
    store.create_message(fun_friday.id, alice.id, "first")
    store.create_message(fun_friday.id, alice.id, "second")

    rooms = store.get_user_rooms(alice.id)
    assert len(rooms) == 1
    assert rooms[0]["name"] == "Fun Friday Group"
    assert rooms[0]["member_count"] == 2
    assert rooms[0]["last_message"] == "second"


def test_set_user_online(store) -> None:
    alice = make_user(store, "alice")
    store.set_user_online(alice.id, True)
    with store._conn() as conn:
        row = conn.execute(
            "SELECT is_online, last_seen FROM users WHERE id = ?", (alice.id,)
        ).fetchone()
    assert row["is_online"] == 1
    assert row["last_seen"] is not None


def test_closed_store_is_unavailable() -> None:
    s = SqliteMessageStore(":memory:")
    s.close()
    with pytest.raises(StoreUnavailable):
        s.get_user(1)


def test_file_backed_pool(tmp_path) -> None:
    s = SqliteMessageStore(str(tmp_path / "chat.db"), pool_size=3)
    try:
        user = make_user(s, "alice")
        assert s.get_user(user.id) == user
    finally:
        s.close()


def test_join_public_room(store, fun_friday) -> None:
    carol = store.get_user_by_username("carol")
    hidden = store.create_room("Staff", is_private=True)

    assert not store.join_public_room(hidden.id, carol.id)
    assert not store.is_member(hidden.id, carol.id)
    assert not store.join_public_room(999, carol.id)

    assert store.join_public_room(fun_friday.id, carol.id)
    assert store.join_public_room(fun_friday.id, carol.id)
    members = {m.username: m.role for m in store.get_room_members(fun_friday.id)}
    assert members["carol"] == "member"
    assert members["alice"] == "admin"
    assert store.get_member_ids(fun_friday.id) == {
        store.get_user_by_username(n).id for n in ("alice", "bob", "carol")
    }


def test_sqlite_store_provides_the_protocol() -> None:
    wanted = {name for name in vars(MessageStore) if not name.startswith("_")}
    assert "join_public_room" in wanted
    assert wanted <= set(dir(SqliteMessageStore))
