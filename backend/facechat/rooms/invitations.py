"""Invitation lifecycle: invite, cancel, accept, resolve.

State per (room, email)::

    none --invite--> pending --accept--> (participant, invite deleted)
                        |  \\--cancel--> none
                        |   \\-invite--> pending (expiry refreshed, same token)
                        \\--TTL passes--> expired --invite--> pending (new token)

The transitions themselves are atomic in ``RoomStore``; this service owns the
token generation, the TTL and the logging.
"""
import logging
import secrets
from datetime import timedelta

from ..auth.users import normalize_email
from .schemas import Invitation, InviteResolution, InviteResult, RoomRef
from .store import RoomStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def generate_token() -> str:
    """Unguessable URL-safe invite token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


class InvitationService:
    """Issues and consumes room invitations."""

    def __init__(self, store: RoomStore, ttl_days: int = 7) -> None:
        self._store = store
        self._ttl = timedelta(days=ttl_days)

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def invite(self, room_id: str, by_user_id: str, email: str) -> InviteResult:
        email = normalize_email(email)
        result = self._store.upsert_invite(room_id, by_user_id, email, generate_token(), self._ttl)
        logger.info(
            "[Invites] %s invite for %s to room %s (by %s, expires %s)",
            "Refreshed" if result.refreshed else "Issued",
            email, room_id, by_user_id, result.invitation.expiresAt.isoformat(),
        )
        return result

    def cancel(self, room_id: str, by_user_id: str, invite_ref: str) -> Invitation:
        invitation = self._store.cancel_invite(room_id, by_user_id, invite_ref)
        logger.info("[Invites] Cancelled invite %s for %s in room %s", invitation.id, invitation.email, room_id)
        return invitation

    def accept(self, token: str, user_id: str) -> RoomRef:
        """Join the invited room. The invite is consumed exactly once."""
        room = self._store.claim_invite(token, user_id)
        logger.info("[Invites] User %s accepted invite to room %s", user_id, room.id)
        return room

    def resolve(self, token: str) -> InviteResolution:
        return self._store.resolve_invite(token)
