"""Error taxonomy shared by the store, the invitation flow and the transports.

Every error carries an HTTP status code (used by the REST handlers) and a
stable ``reason`` string (used in websocket ``error`` events and in JSON
error bodies).
"""
from enum import Enum
from typing import Optional


class AuthFailure(str, Enum):
    """Typed reasons for rejecting a credential."""
    NO_CREDENTIAL = "no-credential"
    INVALID_CREDENTIAL = "invalid-credential"
    EXPIRED_CREDENTIAL = "expired-credential"


class ChatError(Exception):
    """Base exception for FaceChat domain errors."""
    reason = "error"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "reason": self.reason}


class AuthError(ChatError):
    """Raised when a credential is missing, malformed or expired."""

    def __init__(self, failure: AuthFailure, message: Optional[str] = None):
        self.failure = failure
        self.reason = failure.value
        super().__init__(message or f"Authentication failed: {failure.value}", status_code=401)


class Forbidden(ChatError):
    """Raised when the actor is not allowed to perform an operation."""
    reason = "forbidden"

    def __init__(self, message: str = "You are not allowed to do that"):
        super().__init__(message, status_code=403)


class NotAMember(ChatError):
    """Raised when a user is not a participant of the room involved."""
    reason = "not-a-member"

    def __init__(self, message: str = "You are not a member of this chat room"):
        super().__init__(message, status_code=403)


class NotFound(ChatError):
    """Raised when a room, invitation, user or message does not exist."""
    reason = "not-found"

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class Conflict(ChatError):
    """Raised when a write collides with existing state."""
    reason = "conflict"

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, status_code=409)


class AlreadyMember(Conflict):
    """Raised when inviting someone who already participates in the room."""
    reason = "already-member"

    def __init__(self, message: str = "User is already a member of this chat room"):
        super().__init__(message)


class Expired(ChatError):
    """Raised when an invitation is past its expiry; ask for a fresh one."""
    reason = "expired"

    def __init__(self, message: str = "Invitation has expired, ask for a new one"):
        super().__init__(message, status_code=410)


class ValidationError(ChatError):
    """Raised on empty names, empty content and similar bad input."""
    reason = "validation-error"

    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class TransientStoreError(ChatError):
    """Raised when the durable store stays unavailable after bounded retries."""
    reason = "store-unavailable"

    def __init__(self, message: str = "Storage is temporarily unavailable"):
        super().__init__(message, status_code=503)
