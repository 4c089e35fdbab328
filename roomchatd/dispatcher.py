from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from .codec import encode
from .constants import (
    MESSAGE_TYPES,
    MSG_TYPE_TEXT,
    SEARCH_MAX_RESULTS,
    T_AUTH_OK,
    T_ERROR,
    T_JOINED,
    T_LEFT,
    T_NEW_MESSAGE,
    T_USER_OFFLINE,
    T_USER_ONLINE,
    T_USER_TYPING,
)
from .envelope import make_envelope
from .errors import (
    AuthError,
    ChatError,
    DeadSubscriber,
    Forbidden,
    ValidationError,
)
from .models import Message, PresenceTransition, UserIdentity
from .session import (
    AuthFailed,
    AuthSucceeded,
    Disconnect,
    Effect,
    JoinAccepted,
    JoinRejected,
    LeaveRequested,
    MessageSent,
    RegisterPresence,
    RelayTyping,
    Reply,
    SendError,
    Session,
    SubscribeRoom,
    TypingStarted,
    TypingStopped,
    UnregisterPresence,
    UnsubscribeRoom,
)
from .util import normalize_content

if TYPE_CHECKING:
    from .auth import AuthService
    from .config import HubRuntimeConfig
    from .connection import Connection
    from .presence import PresenceRegistry
    from .rooms import RoomHubs
    from .session import SessionManager
    from .stats import StatsManager
    from .store import MessageStore


class MessageDispatcher:
    """
    Chat operations on behalf of a Session.

    This class is responsible for:
    - Authenticating sessions and registering them with presence
    - Authorizing joins and sends against store membership
    - Persisting messages before fanning them out to the room
    - Relaying typing and presence signals
    - Answering history/member/room/search reads
    - Carrying out the side effects of session transitions
    """

    def __init__(
        self,
        *,
        store: MessageStore,
        auth: AuthService,
        hubs: RoomHubs,
        presence: PresenceRegistry,
        config: HubRuntimeConfig,
        stats: StatsManager | None = None,
        sessions: SessionManager | None = None,
        src: bytes = b"",
        send_lock_stripes: int = 64,
    ) -> None:
        self.store = store
        self.auth = auth
        self.hubs = hubs
        self.presence = presence
        self.config = config
        self.stats = stats
        self.sessions = sessions
        self.src = src
        self.log = logging.getLogger("roomchatd.dispatcher")

        self._send_locks = [
            threading.Lock() for _ in range(max(1, int(send_lock_stripes)))
        ]
        presence.add_listener(self.on_presence)

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def _send_lock(self, user_id: int) -> threading.Lock:
        return self._send_locks[hash(user_id) % len(self._send_locks)]

    @staticmethod
    def _require_user(session: Session) -> UserIdentity:
        snap = session.snapshot
        if not snap.is_live or snap.user is None:
            raise AuthError("not authenticated")
        return snap.user

    def _require_member(self, room_id: int, user: UserIdentity) -> None:
        if not self.store.is_member(room_id, user.id):
            raise Forbidden(f"not a member of room {room_id}")

    # Outbound helpers

    def reply(
        self,
        handle: Connection,
        msg_type: int,
        *,
        room: int | None = None,
        body: Any = None,
        ref: bytes | None = None,
        critical: bool = True,
    ) -> bool:
        env = make_envelope(msg_type, src=self.src, room=room, body=body, ref=ref)
        try:
            return handle.deliver(encode(env), critical=critical)
        except DeadSubscriber as e:
            self.log.debug("Reply not delivered %s reason=%s", handle, e.reason)
            return False

    def send_error(
        self,
        handle: Connection,
        error: ChatError,
        *,
        ref: bytes | None = None,
        room: int | None = None,
    ) -> None:
        self._inc("errors_sent")
        self.reply(handle, T_ERROR, room=room, body=error.to_body(), ref=ref)

    # Session effects

    def run_effect(self, session: Session, effect: Effect, ref: bytes | None) -> None:
        handle = session.handle
        user = session.user

        if isinstance(effect, RegisterPresence):
            handle.user_id = effect.user_id
            self.presence.register_connection(effect.user_id, handle)
        elif isinstance(effect, UnregisterPresence):
            self.presence.unregister_connection(effect.user_id, handle)
        elif isinstance(effect, SubscribeRoom):
            if user is not None and self.hubs.join(effect.room_id, handle, user.id):
                self._inc("joins")
        elif isinstance(effect, UnsubscribeRoom):
            if self.hubs.leave(effect.room_id, handle):
                self._inc("leaves")
        elif isinstance(effect, RelayTyping):
            if user is None:
                return
            env = make_envelope(
                T_USER_TYPING,
                src=self.src,
                room=effect.room_id,
                body={
                    "user_id": user.id,
                    "username": user.username,
                    "is_typing": effect.is_typing,
                },
            )
            exclude = self.presence.handles(user.id) | {handle}
            self.hubs.broadcast(effect.room_id, env, exclude=exclude, critical=False)
        elif isinstance(effect, Reply):
            self._send_reply(session, effect, ref)
        elif isinstance(effect, SendError):
            self.send_error(handle, effect.error, ref=ref, room=effect.room_id)
        elif isinstance(effect, Disconnect):
            self.log.info("Disconnecting %s reason=%s", handle, effect.reason)
            handle.disconnect()

    def _send_reply(self, session: Session, effect: Reply, ref: bytes | None) -> None:
        handle = session.handle
        if effect.kind == "auth_ok":
            user = session.user
            if user is None:
                return
            body = {
                "user_id": user.id,
                "username": user.username,
                "display_name": user.display_name,
                "token": session.token,
            }
            self.reply(handle, T_AUTH_OK, body=body, ref=ref)
        elif effect.kind == "joined":
            self.reply(handle, T_JOINED, room=effect.room_id, ref=ref)
        elif effect.kind == "left":
            self.reply(handle, T_LEFT, room=effect.room_id, ref=ref)
        else:
            self.log.warning("Unknown reply kind %r", effect.kind)

    # Operations

    def authenticate(
        self, session: Session, credentials: Any, *, ref: bytes | None = None
    ) -> UserIdentity | None:
        """
        Resolve credentials to a user and move the session to AUTHENTICATED.

        On failure the session is closed: the client gets one ERROR and the
        connection is torn down once it has been flushed.
        """
        try:
            user = self.auth.authenticate(credentials)
        except AuthError as e:
            self._inc("auth_failed")
            self.log.info("Authentication failed %s reason=%s", session.handle, e.message)
            session.apply(AuthFailed(e.message), ref=ref)
            return None

        token = credentials.get("token") if isinstance(credentials, dict) else None
        if not isinstance(token, str) or not token:
            token = self.auth.issue_session_token(user.id)
        session.token = token

        self._inc("auth_ok")
        self.log.info(
            "Authenticated %s user=%s username=%s", session.handle, user.id, user.username
        )
        session.apply(AuthSucceeded(user), ref=ref)
        return user

    def logout(self, session: Session, *, ref: bytes | None = None) -> None:
        if session.token:
            self.auth.revoke_session_token(session.token)
            session.token = None
        self.close_session(session, "logout")
        session.handle.disconnect()

    def close_session(self, session: Session, reason: str) -> None:
        """Run session cleanup. Safe to call any number of times."""
        session.close(reason)
        stale = self.hubs.drop_handle(session.handle)
        if stale:
            self.log.warning(
                "Dropped stale subscriptions %s rooms=%s", session.handle, stale
            )

    def _check_room_limit(self, session: Session, room_id: int) -> None:
        rooms = session.rooms
        limit = int(self.config.max_rooms_per_session)
        if room_id not in rooms and limit > 0 and len(rooms) >= limit:
            raise ValidationError(f"too many rooms (max {limit})")

    def _unsubscribe_revoked(self, room_id: int, handle: Connection) -> None:
        self.log.info(
            "Removing non-member from room=%s handle=%s user=%s",
            room_id,
            handle,
            handle.user_id,
        )
        other = self.sessions.get(handle) if self.sessions is not None else None
        if other is not None:
            other.apply(LeaveRequested(room_id))
        self.hubs.leave(room_id, handle)

    def join_room(self, session: Session, room_id: int, *, ref: bytes | None = None) -> bool:
        user = self._require_user(session)
        self._check_room_limit(session, room_id)

        if not self.store.is_member(room_id, user.id):
            session.apply(
                JoinRejected(room_id, Forbidden(f"not a member of room {room_id}")),
                ref=ref,
            )
            return False

        session.apply(JoinAccepted(room_id), ref=ref)
        return True

    def join_public_room(
        self, session: Session, room_id: int, *, ref: bytes | None = None
    ) -> bool:
        """Become a member of a non-private room, then join it."""
        user = self._require_user(session)
        self._check_room_limit(session, room_id)
        if not self.store.join_public_room(room_id, user.id):
            session.apply(
                JoinRejected(room_id, Forbidden("room not found or is private")),
                ref=ref,
            )
            return False
        self.log.info("Public join room=%s user=%s", room_id, user.id)
        return self.join_room(session, room_id, ref=ref)

    def leave_room(self, session: Session, room_id: int, *, ref: bytes | None = None) -> None:
        self._require_user(session)
        session.apply(LeaveRequested(room_id), ref=ref)

    def typing_start(self, session: Session, room_id: int, *, ref: bytes | None = None) -> None:
        self._require_user(session)
        session.apply(TypingStarted(room_id), ref=ref)

    def typing_stop(self, session: Session, room_id: int, *, ref: bytes | None = None) -> None:
        self._require_user(session)
        session.apply(TypingStopped(room_id), ref=ref)

    def send_message(
        self,
        session: Session,
        room_id: int,
        content: Any,
        message_type: Any = MSG_TYPE_TEXT,
        reply_to_id: Any = None,
    ) -> Message:
        """
        Validate, persist, then broadcast one chat message.

        Nothing is broadcast unless the store accepted the message. A
        per-user lock is held from the membership check through the
        broadcast so that one sender's messages reach the room in the order
        they were persisted.
        """
        user = self._require_user(session)
        text = normalize_content(content, max_chars=int(self.config.max_message_chars))

        if message_type is None:
            message_type = MSG_TYPE_TEXT
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"unknown message type {message_type!r}")

        if reply_to_id is not None and (
            isinstance(reply_to_id, bool) or not isinstance(reply_to_id, int)
        ):
            raise ValidationError("reply_to_id must be an integer")

        with self._send_lock(user.id):
            members = self.store.get_member_ids(room_id)
            if user.id not in members:
                raise Forbidden(f"not a member of room {room_id}")
            msg = self.store.create_message(
                room_id, user.id, text, message_type, reply_to_id
            )
            self._inc("msgs_persisted")

            env = make_envelope(
                T_NEW_MESSAGE,
                src=self.src,
                room=room_id,
                body=msg.to_wire(user),
            )
            # Subscribers whose membership was revoked after they joined.
            revoked = {
                h for h, uid in self.hubs.subscriptions(room_id) if uid not in members
            }
            exclude = set(revoked)
            if not self.config.echo_to_sender:
                exclude.add(session.handle)
            delivered = self.hubs.broadcast(room_id, env, exclude=exclude, critical=True)
            self._inc("msgs_broadcast")

        for handle in revoked:
            self._unsubscribe_revoked(room_id, handle)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Message room=%s id=%s sender=%s deliveries=%s",
                room_id,
                msg.id,
                user.id,
                delivered,
            )

        session.apply(MessageSent(room_id))
        return msg

    def get_rooms(self, session: Session) -> list[dict[str, Any]]:
        user = self._require_user(session)
        return self.store.get_user_rooms(user.id)

    def get_history(
        self,
        session: Session,
        room_id: int,
        limit: Any = None,
        offset: Any = 0,
    ) -> list[dict[str, Any]]:
        user = self._require_user(session)
        self._require_member(room_id, user)

        if limit is None:
            limit = self.config.history_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError("limit must be an integer")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be a non-negative integer")
        limit = max(1, min(limit, int(self.config.history_max_limit)))

        messages = self.store.get_room_messages(room_id, limit, offset)
        senders = self.store.get_users(m.sender_id for m in messages)
        return [m.to_wire(senders.get(m.sender_id)) for m in messages]

    def get_members(self, session: Session, room_id: int) -> list[dict[str, Any]]:
        user = self._require_user(session)
        self._require_member(room_id, user)

        out: list[dict[str, Any]] = []
        for m in self.store.get_room_members(room_id):
            out.append(
                {
                    "user_id": m.user_id,
                    "username": m.username,
                    "display_name": m.display_name,
                    "role": m.role,
                    "joined_at": m.joined_at,
                    "online": self.presence.is_online(m.user_id),
                }
            )
        return out

    def search_messages(
        self, session: Session, query: Any, room_id: int | None = None
    ) -> list[dict[str, Any]]:
        user = self._require_user(session)
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("search query is required")
        if room_id is not None:
            self._require_member(room_id, user)

        found = self.store.search_messages(
            user.id, query, room_id=room_id, limit=SEARCH_MAX_RESULTS
        )
        senders = self.store.get_users(m.sender_id for m, _ in found)
        out: list[dict[str, Any]] = []
        for m, room_name in found:
            item = m.to_wire(senders.get(m.sender_id))
            item["room_name"] = room_name
            out.append(item)
        return out

    # Presence

    def on_presence(self, transition: PresenceTransition) -> None:
        """Announce a user's online/offline transition to the rooms they belong to."""
        user_id = transition.user_id
        try:
            self.store.set_user_online(user_id, transition.online)
        except ChatError as e:
            self.log.warning("Could not persist presence user=%s err=%s", user_id, e)

        try:
            user = self.store.get_user(user_id)
            rooms = self.store.get_user_rooms(user_id)
        except ChatError as e:
            self.log.warning("Presence broadcast skipped user=%s err=%s", user_id, e)
            return
        if user is None:
            return

        msg_type = T_USER_ONLINE if transition.online else T_USER_OFFLINE
        exclude = self.presence.handles(user_id)
        for room in rooms:
            env = make_envelope(
                msg_type, src=self.src, room=room["id"], body=user.to_wire()
            )
            self.hubs.broadcast(room["id"], env, exclude=exclude, critical=False)
