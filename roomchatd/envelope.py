from __future__ import annotations

import os
import time

from .constants import (
    K_BODY,
    K_ID,
    K_REF,
    K_ROOM,
    K_SRC,
    K_T,
    K_TS,
    K_V,
    PROTOCOL_VERSION,
)
from .errors import ValidationError


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    msg_type: int,
    *,
    src: bytes = b"",
    room: int | None = None,
    body=None,
    ref: bytes | None = None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: PROTOCOL_VERSION,
        K_T: int(msg_type),
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
        K_SRC: src,
    }
    if room is not None:
        env[K_ROOM] = room
    if body is not None:
        env[K_BODY] = body
    if ref is not None:
        env[K_REF] = ref
    return env


def validate_envelope(env: dict) -> None:
    """Check the structural rules of an inbound envelope.

    Raises ValidationError so the router can answer with a single ERROR
    envelope instead of dropping the connection.
    """
    if not isinstance(env, dict):
        raise ValidationError("envelope must be a CBOR map")

    for k in env.keys():
        if not isinstance(k, int) or isinstance(k, bool):
            raise ValidationError("envelope keys must be integers")
        if k < 0:
            raise ValidationError("envelope keys must be unsigned integers")

    for k in (K_V, K_T, K_ID, K_TS):
        if k not in env:
            raise ValidationError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise ValidationError("protocol version must be an integer")
    if v != PROTOCOL_VERSION:
        raise ValidationError(f"unsupported version {v}")

    if not isinstance(env[K_T], int):
        raise ValidationError("message type must be an integer")

    if not isinstance(env[K_ID], (bytes, bytearray)):
        raise ValidationError("message id must be bytes")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise ValidationError("timestamp must be an integer")
    if ts < 0:
        raise ValidationError("timestamp must be unsigned")

    if K_SRC in env and not isinstance(env[K_SRC], (bytes, bytearray)):
        raise ValidationError("sender identity must be bytes")

    if K_ROOM in env:
        room = env[K_ROOM]
        if isinstance(room, bool) or not isinstance(room, (int, str)):
            raise ValidationError("room id must be an integer or string")
        if room == "":
            raise ValidationError("room id must not be empty")
