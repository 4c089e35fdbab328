from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .codec import decode
from .constants import (
    K_BODY,
    K_ID,
    K_ROOM,
    K_T,
    T_AUTH,
    T_GET_HISTORY,
    T_GET_MEMBERS,
    T_GET_ROOMS,
    T_HISTORY,
    T_JOIN_PUBLIC,
    T_JOIN_ROOM,
    T_LEAVE_ROOM,
    T_LOGOUT,
    T_MEMBERS,
    T_PING,
    T_PONG,
    T_ROOMS,
    T_SEARCH,
    T_SEARCH_RESULTS,
    T_SEND_MESSAGE,
    T_TYPING_START,
    T_TYPING_STOP,
)
from .envelope import validate_envelope
from .errors import AuthError, ChatError, RateLimited, ValidationError
from .session import SessionState
from .util import normalize_room_id

if TYPE_CHECKING:
    from .dispatcher import MessageDispatcher
    from .session import Session, SessionManager
    from .stats import StatsManager


class MessageRouter:
    """
    Decodes inbound packets and dispatches them for one session.

    This class is responsible for:
    - Decoding and validating envelopes
    - Rate limiting
    - Gating everything but AUTH until the session is authenticated
    - Dispatching by message type
    - Turning ChatErrors into a single ERROR reply to the sender
    """

    def __init__(
        self,
        dispatcher: MessageDispatcher,
        sessions: SessionManager,
        *,
        stats: StatsManager | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.sessions = sessions
        self.stats = stats
        self.log = logging.getLogger("roomchatd.router")

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def route_packet(self, session: Session, data: bytes) -> None:
        """Main entry point for one inbound packet."""
        handle = session.handle
        if session.state is SessionState.CLOSED:
            return

        self._inc("pkts_in")
        self._inc("bytes_in", len(data))
        session.touch()

        if not self.sessions.refill_and_take(handle, 1.0):
            self._inc("rate_limited")
            self.log.debug("Rate limited %s", handle)
            self.dispatcher.send_error(handle, RateLimited())
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except ValidationError as e:
            self._inc("pkts_bad")
            self.log.debug("Bad packet %s bytes=%s err=%s", handle, len(data), e)
            self.dispatcher.send_error(handle, ValidationError(f"bad message: {e.message}"))
            return

        t = env.get(K_T)
        ref = env.get(K_ID)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX %s t=%s room=%r bytes=%s body_type=%s",
                handle,
                t,
                env.get(K_ROOM),
                len(data),
                type(env.get(K_BODY)).__name__,
            )

        try:
            self._dispatch(session, t, env, ref)
        except ChatError as e:
            self.log.debug("Request rejected %s t=%s code=%s err=%s", handle, t, e.code, e)
            self.dispatcher.send_error(handle, e, ref=ref)
        except Exception:
            self.log.exception("Handler failed %s t=%s", handle, t)
            self.dispatcher.send_error(handle, ChatError("internal error"), ref=ref)

    def _dispatch(self, session: Session, t: Any, env: dict, ref: bytes | None) -> None:
        if t == T_PONG:
            self._handle_pong(session)
            return
        if t == T_PING:
            self._handle_ping(session, env, ref)
            return

        state = session.state
        if state is SessionState.CONNECTING:
            if t != T_AUTH:
                raise AuthError("not authenticated")
            self.dispatcher.authenticate(session, env.get(K_BODY), ref=ref)
            return
        if state is SessionState.CLOSED:
            return

        user = session.user
        if user is not None:
            self.dispatcher.presence.touch(user.id)

        if t == T_AUTH:
            raise ValidationError("already authenticated")
        elif t == T_LOGOUT:
            self.dispatcher.logout(session, ref=ref)
        elif t == T_JOIN_ROOM:
            self.dispatcher.join_room(session, self._room(env), ref=ref)
        elif t == T_JOIN_PUBLIC:
            self.dispatcher.join_public_room(session, self._room(env), ref=ref)
        elif t == T_LEAVE_ROOM:
            self.dispatcher.leave_room(session, self._room(env), ref=ref)
        elif t == T_SEND_MESSAGE:
            self._handle_send(session, env)
        elif t == T_TYPING_START:
            self.dispatcher.typing_start(session, self._room(env), ref=ref)
        elif t == T_TYPING_STOP:
            self.dispatcher.typing_stop(session, self._room(env), ref=ref)
        elif t == T_GET_ROOMS:
            rooms = self.dispatcher.get_rooms(session)
            self.dispatcher.reply(session.handle, T_ROOMS, body=rooms, ref=ref)
        elif t == T_GET_HISTORY:
            self._handle_history(session, env, ref)
        elif t == T_GET_MEMBERS:
            room_id = self._room(env)
            members = self.dispatcher.get_members(session, room_id)
            self.dispatcher.reply(
                session.handle, T_MEMBERS, room=room_id, body=members, ref=ref
            )
        elif t == T_SEARCH:
            self._handle_search(session, env, ref)
        else:
            raise ValidationError(f"unsupported message type {t}")

    @staticmethod
    def _room(env: dict) -> int:
        return normalize_room_id(env.get(K_ROOM))

    @staticmethod
    def _body_dict(env: dict) -> dict:
        body = env.get(K_BODY)
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise ValidationError("body must be a map")
        return body

    def _handle_send(self, session: Session, env: dict) -> None:
        room_id = self._room(env)
        body = env.get(K_BODY)
        if isinstance(body, str):
            body = {"content": body}
        if not isinstance(body, dict):
            raise ValidationError("message body must be a map")

        message_type = body.get("type", body.get("message_type"))
        self.dispatcher.send_message(
            session,
            room_id,
            body.get("content"),
            message_type,
            body.get("reply_to_id"),
        )

    def _handle_history(self, session: Session, env: dict, ref: bytes | None) -> None:
        room_id = self._room(env)
        body = self._body_dict(env)
        messages = self.dispatcher.get_history(
            session, room_id, body.get("limit"), body.get("offset", 0)
        )
        self.dispatcher.reply(
            session.handle, T_HISTORY, room=room_id, body=messages, ref=ref
        )

    def _handle_search(self, session: Session, env: dict, ref: bytes | None) -> None:
        body = env.get(K_BODY)
        if isinstance(body, str):
            body = {"query": body}
        if not isinstance(body, dict):
            raise ValidationError("search body must be a map")

        room_id = self._room(env) if env.get(K_ROOM) is not None else None
        results = self.dispatcher.search_messages(session, body.get("query"), room_id)
        self.dispatcher.reply(
            session.handle, T_SEARCH_RESULTS, room=room_id, body=results, ref=ref
        )

    def _handle_pong(self, session: Session) -> None:
        self._inc("pongs_in")
        session.awaiting_pong = None

    def _handle_ping(self, session: Session, env: dict, ref: bytes | None) -> None:
        self._inc("pings_in")
        self._inc("pongs_out")
        self.dispatcher.reply(session.handle, T_PONG, body=env.get(K_BODY), ref=ref)
