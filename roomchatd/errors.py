"""Error taxonomy for the chat core.

Every error that can reach a client carries a stable ``code`` which is sent in
the body of an ERROR envelope. ``DeadSubscriber`` is internal: it describes a
peer whose delivery channel failed and is never reported to the broadcaster.
"""

from __future__ import annotations

from .constants import (
    E_AUTH,
    E_EMPTY_MESSAGE,
    E_FORBIDDEN,
    E_INTERNAL,
    E_RATE_LIMITED,
    E_STORE_UNAVAILABLE,
    E_VALIDATION,
)


class ChatError(Exception):
    code = E_INTERNAL

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_body(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class AuthError(ChatError):
    code = E_AUTH


class Forbidden(ChatError):
    code = E_FORBIDDEN


class ValidationError(ChatError):
    code = E_VALIDATION


class EmptyMessage(ValidationError):
    code = E_EMPTY_MESSAGE

    def __init__(self, message: str = "message content is empty") -> None:
        super().__init__(message)


class RateLimited(ChatError):
    code = E_RATE_LIMITED

    def __init__(self, message: str = "rate limited") -> None:
        super().__init__(message)


class StoreUnavailable(ChatError):
    code = E_STORE_UNAVAILABLE


class DeadSubscriber(Exception):
    """A subscriber's outbound channel is closed or cannot accept more events."""

    def __init__(self, handle, reason: str) -> None:
        super().__init__(reason)
        self.handle = handle
        self.reason = reason
