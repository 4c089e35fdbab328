"""Connection Session state machine.

Every protocol event is applied with ``transition(snapshot, event)``, a pure
function returning the next snapshot and the side effects to carry out. The
functions never touch hubs, presence or timers themselves, so they can be
exercised without a transport. ``Session`` holds the live snapshot for one
connection and owns that connection's typing-expiry timers; ``SessionManager``
tracks sessions and applies rate limiting.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Union

from .errors import AuthError, ChatError, ValidationError
from .models import UserIdentity

if TYPE_CHECKING:
    from .connection import Connection


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionSnapshot:
    state: SessionState = SessionState.CONNECTING
    user: UserIdentity | None = None
    rooms: frozenset[int] = frozenset()
    typing: frozenset[int] = frozenset()
    close_reason: str | None = None

    @property
    def is_live(self) -> bool:
        return self.state in (SessionState.AUTHENTICATED, SessionState.JOINED)


# Events


@dataclass(frozen=True)
class AuthSucceeded:
    user: UserIdentity


@dataclass(frozen=True)
class AuthFailed:
    reason: str


@dataclass(frozen=True)
class JoinAccepted:
    room_id: int


@dataclass(frozen=True)
class JoinRejected:
    room_id: int
    error: ChatError


@dataclass(frozen=True)
class LeaveRequested:
    room_id: int


@dataclass(frozen=True)
class TypingStarted:
    room_id: int


@dataclass(frozen=True)
class TypingStopped:
    room_id: int


@dataclass(frozen=True)
class TypingExpired:
    room_id: int


@dataclass(frozen=True)
class MessageSent:
    room_id: int


@dataclass(frozen=True)
class Closed:
    reason: str


Event = Union[
    AuthSucceeded,
    AuthFailed,
    JoinAccepted,
    JoinRejected,
    LeaveRequested,
    TypingStarted,
    TypingStopped,
    TypingExpired,
    MessageSent,
    Closed,
]


# Effects


@dataclass(frozen=True)
class RegisterPresence:
    user_id: int


@dataclass(frozen=True)
class UnregisterPresence:
    user_id: int


@dataclass(frozen=True)
class SubscribeRoom:
    room_id: int


@dataclass(frozen=True)
class UnsubscribeRoom:
    room_id: int


@dataclass(frozen=True)
class ArmTypingTimer:
    room_id: int


@dataclass(frozen=True)
class CancelTypingTimer:
    room_id: int


@dataclass(frozen=True)
class RelayTyping:
    room_id: int
    is_typing: bool


@dataclass(frozen=True)
class Reply:
    kind: str
    room_id: int | None = None


@dataclass(frozen=True)
class SendError:
    error: ChatError
    room_id: int | None = None


@dataclass(frozen=True)
class Disconnect:
    reason: str


Effect = Union[
    RegisterPresence,
    UnregisterPresence,
    SubscribeRoom,
    UnsubscribeRoom,
    ArmTypingTimer,
    CancelTypingTimer,
    RelayTyping,
    Reply,
    SendError,
    Disconnect,
]


@dataclass(frozen=True)
class Transition:
    snapshot: SessionSnapshot
    effects: tuple[Effect, ...] = ()


def _with_rooms(snap: SessionSnapshot, rooms: frozenset[int]) -> SessionSnapshot:
    state = SessionState.JOINED if rooms else SessionState.AUTHENTICATED
    return replace(snap, rooms=rooms, state=state)


def _close(snap: SessionSnapshot, reason: str) -> Transition:
    if snap.state is SessionState.CLOSED:
        return Transition(snap)

    effects: list[Effect] = []
    for room_id in sorted(snap.typing):
        effects.append(CancelTypingTimer(room_id))
    for room_id in sorted(snap.rooms):
        effects.append(UnsubscribeRoom(room_id))
    if snap.user is not None and snap.is_live:
        effects.append(UnregisterPresence(snap.user.id))

    closed = replace(
        snap,
        state=SessionState.CLOSED,
        rooms=frozenset(),
        typing=frozenset(),
        close_reason=reason,
    )
    return Transition(closed, tuple(effects))


def _stop_typing(snap: SessionSnapshot, room_id: int, *, relay: bool) -> Transition:
    if room_id not in snap.typing:
        return Transition(snap)
    effects: list[Effect] = [CancelTypingTimer(room_id)]
    if relay:
        effects.append(RelayTyping(room_id, False))
    return Transition(replace(snap, typing=snap.typing - {room_id}), tuple(effects))


def transition(snap: SessionSnapshot, event: Event) -> Transition:
    """Apply one event to a session snapshot."""
    if isinstance(event, Closed):
        return _close(snap, event.reason)

    if snap.state is SessionState.CLOSED:
        return Transition(snap)

    if snap.state is SessionState.CONNECTING:
        if isinstance(event, AuthSucceeded):
            authed = replace(snap, state=SessionState.AUTHENTICATED, user=event.user)
            return Transition(
                authed, (RegisterPresence(event.user.id), Reply("auth_ok"))
            )
        if isinstance(event, AuthFailed):
            closed = _close(snap, f"authentication failed: {event.reason}")
            return Transition(
                closed.snapshot,
                (SendError(AuthError(event.reason)), Disconnect("authentication failed")),
            )
        return Transition(snap, (SendError(AuthError("not authenticated")),))

    # AUTHENTICATED or JOINED
    if isinstance(event, (AuthSucceeded, AuthFailed)):
        return Transition(snap, (SendError(ValidationError("already authenticated")),))

    if isinstance(event, JoinAccepted):
        if event.room_id in snap.rooms:
            return Transition(snap, (Reply("joined", event.room_id),))
        nxt = _with_rooms(snap, snap.rooms | {event.room_id})
        return Transition(
            nxt, (SubscribeRoom(event.room_id), Reply("joined", event.room_id))
        )

    if isinstance(event, JoinRejected):
        return Transition(snap, (SendError(event.error, event.room_id),))

    if isinstance(event, LeaveRequested):
        stopped = _stop_typing(snap, event.room_id, relay=True)
        snap2 = stopped.snapshot
        effects = list(stopped.effects)
        if event.room_id in snap2.rooms:
            snap2 = _with_rooms(snap2, snap2.rooms - {event.room_id})
            effects.append(UnsubscribeRoom(event.room_id))
        effects.append(Reply("left", event.room_id))
        return Transition(snap2, tuple(effects))

    if isinstance(event, TypingStarted):
        if event.room_id not in snap.rooms:
            return Transition(
                snap,
                (SendError(ValidationError("join the room first"), event.room_id),),
            )
        if event.room_id in snap.typing:
            return Transition(snap, (ArmTypingTimer(event.room_id),))
        nxt = replace(snap, typing=snap.typing | {event.room_id})
        return Transition(
            nxt, (ArmTypingTimer(event.room_id), RelayTyping(event.room_id, True))
        )

    if isinstance(event, TypingStopped):
        if event.room_id not in snap.rooms:
            return Transition(
                snap,
                (SendError(ValidationError("join the room first"), event.room_id),),
            )
        return _stop_typing(snap, event.room_id, relay=True)

    if isinstance(event, TypingExpired):
        return _stop_typing(snap, event.room_id, relay=True)

    if isinstance(event, MessageSent):
        return _stop_typing(snap, event.room_id, relay=True)

    raise TypeError(f"unknown session event {event!r}")


EffectRunner = Callable[["Session", Effect, bytes | None], None]


class Session:
    """
    Live state for one connection.

    ``apply`` runs a transition under the session lock and hands the effects
    to ``runner`` after releasing it, so effect handlers may take hub or
    presence locks freely.
    """

    def __init__(
        self,
        handle: Connection,
        runner: EffectRunner,
        *,
        typing_timeout_s: float = 2.0,
    ) -> None:
        self.handle = handle
        self.runner = runner
        self.typing_timeout_s = float(typing_timeout_s)
        self.log = logging.getLogger("roomchatd.session")

        self._snap = SessionSnapshot()
        self._lock = threading.RLock()
        self._timers: dict[int, threading.Timer] = {}
        self._timer_gen: dict[int, int] = {}

        self.token: str | None = None
        self.created_at = time.monotonic()
        self.last_activity = self.created_at
        self.awaiting_pong: float | None = None

    @property
    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snap

    @property
    def state(self) -> SessionState:
        return self.snapshot.state

    @property
    def user(self) -> UserIdentity | None:
        return self.snapshot.user

    @property
    def rooms(self) -> frozenset[int]:
        return self.snapshot.rooms

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def apply(self, event: Event, *, ref: bytes | None = None) -> Transition:
        """Run a transition; ``ref`` is the id of the request that caused it."""
        with self._lock:
            result = transition(self._snap, event)
            self._snap = result.snapshot
            # Timer bookkeeping happens under the lock so a timer firing
            # concurrently sees a consistent generation.
            for effect in result.effects:
                if isinstance(effect, ArmTypingTimer):
                    self._arm_timer_locked(effect.room_id)
                elif isinstance(effect, CancelTypingTimer):
                    self._cancel_timer_locked(effect.room_id)

        for effect in result.effects:
            if isinstance(effect, (ArmTypingTimer, CancelTypingTimer)):
                continue
            try:
                self.runner(self, effect, ref)
            except Exception:
                # Cleanup must run to the end even if one step fails.
                self.log.exception(
                    "Effect failed handle=%s effect=%r", self.handle, effect
                )
        return result

    def close(self, reason: str) -> Transition:
        return self.apply(Closed(reason))

    def pending_typing_timers(self) -> list[int]:
        with self._lock:
            return sorted(self._timers)

    def _arm_timer_locked(self, room_id: int) -> None:
        self._cancel_timer_locked(room_id)
        gen = self._timer_gen.get(room_id, 0) + 1
        self._timer_gen[room_id] = gen
        t = threading.Timer(self.typing_timeout_s, self._on_timer, args=(room_id, gen))
        t.daemon = True
        t.name = f"roomchatd-typing-{self.handle.id}-{room_id}"
        self._timers[room_id] = t
        t.start()

    def _cancel_timer_locked(self, room_id: int) -> None:
        t = self._timers.pop(room_id, None)
        if t is not None:
            t.cancel()

    def _on_timer(self, room_id: int, gen: int) -> None:
        with self._lock:
            # A re-armed or cancelled timer may still fire once; ignore it.
            if self._timer_gen.get(room_id) != gen or room_id not in self._timers:
                return
            self._timers.pop(room_id, None)
        self.log.debug("Typing expired handle=%s room=%s", self.handle, room_id)
        self.apply(TypingExpired(room_id))


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass
class SessionManager:
    """Tracks sessions by connection handle and rate-limits inbound traffic."""

    rate_limit_msgs_per_minute: int = 240
    sessions: dict[Any, Session] = field(default_factory=dict)
    _rate: dict[Any, _RateState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add(self, session: Session) -> None:
        with self._lock:
            self.sessions[session.handle] = session
            self._rate[session.handle] = _RateState(
                tokens=float(self.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )

    def get(self, handle) -> Session | None:
        with self._lock:
            return self.sessions.get(handle)

    def remove(self, handle) -> Session | None:
        with self._lock:
            self._rate.pop(handle, None)
            return self.sessions.pop(handle, None)

    def all(self) -> list[Session]:
        with self._lock:
            return list(self.sessions.values())

    def refill_and_take(self, handle, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take ``cost``
        tokens. Returns False if the caller is rate limited.
        """
        with self._lock:
            state = self._rate.get(handle)
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(max(1, int(self.rate_limit_msgs_per_minute)))
            rate_per_s = per_min / 60.0
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def clear_all(self) -> list[Session]:
        with self._lock:
            out = list(self.sessions.values())
            self.sessions.clear()
            self._rate.clear()
            return out

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            sessions = list(self.sessions.values())
        states = [s.state for s in sessions]
        return {
            "total": len(states),
            "authenticated": sum(
                1 for st in states if st in (SessionState.AUTHENTICATED, SessionState.JOINED)
            ),
            "joined": sum(1 for st in states if st is SessionState.JOINED),
        }
