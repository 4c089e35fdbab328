from __future__ import annotations

import os

from .errors import EmptyMessage, ValidationError


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_room_id(value) -> int:
    """Coerce a wire room id (int or numeric string) into a store room id."""
    if isinstance(value, bool):
        raise ValidationError("room id must be an integer")
    if isinstance(value, int):
        if value <= 0:
            raise ValidationError("room id must be positive")
        return value
    if isinstance(value, str):
        s = value.strip()
        # Socket-style room names are accepted as "room-<id>".
        if s.startswith("room-"):
            s = s[len("room-"):]
        if s.isascii() and s.isdigit() and int(s) > 0:
            return int(s)
    raise ValidationError("room id required")


def normalize_content(value, *, max_chars: int) -> str:
    if not isinstance(value, str):
        raise ValidationError("message content must be a string")

    s = value.strip()
    if not s:
        raise EmptyMessage()

    if max_chars > 0 and len(s) > max_chars:
        raise ValidationError(f"message too long: {len(s)} > {max_chars} chars")

    if "\x00" in s:
        raise ValidationError("message content must not contain NUL")

    return s

