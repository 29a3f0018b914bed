"""Pydantic schemas for rooms, invitations and messages.

These are the read models returned by ``RoomStore`` and the request/response
bodies of the administrative HTTP endpoints. Field names are camelCase to
match the JSON the clients consume.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class InviteStatus(str, Enum):
    """Lifecycle state of an invitation.

    Acceptance and cancellation delete the invitation, so only ``pending``
    and ``expired`` are ever stored. ``ACCEPTED`` exists for API symmetry.
    """
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class Participant(BaseModel):
    id: str = Field(..., description="User ID")
    username: str = Field(..., description="Username")


class Invitation(BaseModel):
    """A pending (or lazily expired) invitation embedded in a room.

    The token is excluded from serialization; only the invite response sent
    back to the inviter carries it.
    """
    id: str
    roomId: str
    email: str
    status: InviteStatus = InviteStatus.PENDING
    token: str = Field(..., exclude=True)
    createdAt: datetime
    expiresAt: datetime


class Room(BaseModel):
    """A chat room with its participants (in join order) and pending invites."""
    id: str
    name: str
    description: str = ""
    icon: Optional[str] = None
    creatorId: str
    participants: List[Participant] = Field(default_factory=list)
    pendingInvites: List[Invitation] = Field(default_factory=list)
    createdAt: datetime
    updatedAt: datetime

    def has_participant(self, user_id: str) -> bool:
        return any(p.id == user_id for p in self.participants)


class RoomRef(BaseModel):
    id: str
    name: str


class Message(BaseModel):
    """A persisted chat message. Immutable once written."""
    id: str
    roomId: str
    senderId: str
    senderUsername: str = ""
    content: str
    createdAt: datetime


class InviteResult(BaseModel):
    """Outcome of an invite call.

    Attributes:
        invitation: The pending invitation (new or refreshed).
        token: The invitation token to deliver to the invitee.
        refreshed: True if an existing pending invite was extended instead of
            creating a new one.
    """
    invitation: Invitation
    token: str
    refreshed: bool = False


class InviteResolution(BaseModel):
    """What the pre-login landing page needs to know about a token."""
    email: str
    roomId: str
    roomName: str
    userAlreadyExists: bool


# =============================================================================
# Request/Response Models
# =============================================================================


class CreateRoomRequest(BaseModel):
    name: str = Field(..., description="Room name")
    description: str = Field(default="", description="Room description")
    icon: Optional[str] = Field(default=None, description="Icon reference (URL or path)")
    participantIds: List[str] = Field(default_factory=list, description="Existing accounts to add")
    inviteEmails: List[str] = Field(default_factory=list, description="Emails to invite by token")


class UpdateRoomRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None


class AddMemberRequest(BaseModel):
    userId: str


class InviteRequest(BaseModel):
    email: str


class InviteOut(BaseModel):
    id: str
    email: str
    token: str
    expiresAt: datetime


class InviteResponse(BaseModel):
    message: str
    invite: InviteOut
    refreshed: bool


class SendMessageRequest(BaseModel):
    content: str
    clientId: Optional[str] = Field(
        default=None,
        description="Client-generated correlation id echoed in the broadcast",
    )


class HistoryResponse(BaseModel):
    messages: List[Message]
    hasMore: bool
