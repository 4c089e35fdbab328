"""Credential checks and session tokens.

Password hashes are stored as ``pbkdf2_sha256$<iters>$<salt b64>$<hash b64>``
in the store's ``users.password_hash`` column. Session tokens live only in
memory and expire after ``token_ttl_s``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import threading
import time
from typing import TYPE_CHECKING, Any, Protocol

from .errors import AuthError
from .models import UserIdentity

if TYPE_CHECKING:
    from .store import MessageStore

PBKDF2_ITERS = 200_000
PBKDF2_DKLEN = 32
_SCHEME = "pbkdf2_sha256"


class AuthService(Protocol):
    def authenticate(self, credentials: dict[str, Any]) -> UserIdentity: ...

    def validate_session_token(self, token: str) -> int | None: ...

    def issue_session_token(self, user_id: int) -> str: ...

    def revoke_session_token(self, token: str) -> None: ...


def hash_password(password: str, *, iters: int = PBKDF2_ITERS) -> str:
    salt = secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iters, dklen=PBKDF2_DKLEN)
    return "$".join(
        (
            _SCHEME,
            str(iters),
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(dk).decode("ascii"),
        )
    )


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iters_s, salt_b64, hash_b64 = stored.split("$", 3)
        if scheme != _SCHEME:
            return False
        iters = int(iters_s)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(hash_b64.encode("ascii"))
    except (ValueError, TypeError):
        return False
    got = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, iters, dklen=len(expected)
    )
    return hmac.compare_digest(expected, got)


class StoreAuthService:
    """AuthService backed by the message store's users table."""

    def __init__(
        self, store: MessageStore, *, token_ttl_s: float = 24 * 3600.0
    ) -> None:
        self.store = store
        self.token_ttl_s = float(token_ttl_s)
        self.log = logging.getLogger("roomchatd.auth")
        self._tokens: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def register(
        self,
        username: str,
        password: str,
        *,
        display_name: str | None = None,
        email: str | None = None,
        default_room_id: int | None = None,
    ) -> UserIdentity:
        """Create a user; new users are added to ``default_room_id`` if given."""
        if not isinstance(password, str) or not password:
            raise AuthError("password is required")
        user = self.store.create_user(
            username,
            hash_password(password),
            display_name=display_name,
            email=email,
        )
        if default_room_id is not None:
            self.store.add_member(default_room_id, user.id)
        self.log.info("Registered user=%s username=%s", user.id, user.username)
        return user

    def authenticate(self, credentials: dict[str, Any]) -> UserIdentity:
        if not isinstance(credentials, dict):
            raise AuthError("credentials required")

        token = credentials.get("token")
        if isinstance(token, str) and token:
            user_id = self.validate_session_token(token)
            if user_id is None:
                raise AuthError("invalid or expired session token")
            user = self.store.get_user(user_id)
            if user is None:
                raise AuthError("invalid or expired session token")
            return user

        username = credentials.get("username")
        password = credentials.get("password")
        if not isinstance(username, str) or not username.strip():
            raise AuthError("username and password are required")
        if not isinstance(password, str) or not password:
            raise AuthError("username and password are required")

        found = self.store.get_credentials(username.strip())
        if found is None:
            raise AuthError("invalid credentials")
        user, stored = found
        if not verify_password(password, stored):
            raise AuthError("invalid credentials")
        return user

    def issue_session_token(self, user_id: int) -> str:
        token = secrets.token_urlsafe(24)
        with self._lock:
            self._prune_locked(time.monotonic())
            self._tokens[token] = (int(user_id), time.monotonic() + self.token_ttl_s)
        return token

    def validate_session_token(self, token: str) -> int | None:
        now = time.monotonic()
        with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                return None
            user_id, expires = entry
            if expires <= now:
                self._tokens.pop(token, None)
                return None
            return user_id

    def revoke_session_token(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def _prune_locked(self, now: float) -> None:
        for t, (_, expires) in list(self._tokens.items()):
            if expires <= now:
                self._tokens.pop(t, None)
