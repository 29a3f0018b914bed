"""Rooms module: membership, invitations and message history."""

from .invitations import InvitationService
from .schemas import Invitation, InviteStatus, Message, Room, RoomRef
from .store import RoomStore

__all__ = [
    "Invitation",
    "InvitationService",
    "InviteStatus",
    "Message",
    "Room",
    "RoomRef",
    "RoomStore",
]
