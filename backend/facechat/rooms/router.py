"""Room administration router.

Endpoints:
    GET    /rooms                               - Rooms the caller participates in
    POST   /rooms                               - Create a room (optionally inviting emails)
    GET    /rooms/{room_id}                     - Room detail (members only)
    PUT    /rooms/{room_id}                     - Rename / re-describe / set icon (creator only)
    POST   /rooms/{room_id}/members             - Add an existing account
    DELETE /rooms/{room_id}/members/{user_id}   - Remove a participant
    POST   /rooms/{room_id}/invites             - Invite by email
    DELETE /rooms/{room_id}/invites/{ref}       - Cancel an invite (by id or token)
    GET    /rooms/{room_id}/messages            - Paginated history, newest page first
    POST   /rooms/{room_id}/messages            - Send a message over HTTP
    GET    /invites/{token}                     - Resolve an invite (no auth)
    POST   /invites/{token}/accept              - Accept an invite

Every endpoint except invite resolution requires a bearer credential.
Invitation emails are sent after the response, and a failed send never
fails the request.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ..auth.dependencies import get_current_identity, get_services
from ..auth.schemas import Identity
from ..auth.users import normalize_email
from ..errors import AlreadyMember
from ..mail import build_join_url
from ..services import Services
from .schemas import (
    AddMemberRequest,
    CreateRoomRequest,
    HistoryResponse,
    InviteOut,
    InviteRequest,
    InviteResolution,
    InviteResponse,
    InviteResult,
    Room,
    SendMessageRequest,
    UpdateRoomRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["rooms"])
invites_router = APIRouter(prefix="/invites", tags=["invites"])


def _queue_invite_mail(
    background_tasks: BackgroundTasks,
    services: Services,
    result: InviteResult,
    room_name: str,
    inviter: str,
) -> None:
    join_url = build_join_url(services.config.invites.join_url_base, result.token)
    background_tasks.add_task(
        services.mailer.send_invitation,
        result.invitation.email,
        room_name,
        inviter,
        join_url,
    )


def _invite_response(result: InviteResult) -> InviteResponse:
    return InviteResponse(
        message="Invitation refreshed" if result.refreshed else "Invitation sent successfully",
        invite=InviteOut(
            id=result.invitation.id,
            email=result.invitation.email,
            token=result.token,
            expiresAt=result.invitation.expiresAt,
        ),
        refreshed=result.refreshed,
    )


# =============================================================================
# Rooms
# =============================================================================


@router.get("", response_model=List[Room])
async def list_rooms(
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> List[Room]:
    return services.store.list_rooms_for_user(identity.userId)


@router.post("", response_model=Room, status_code=201)
async def create_room(
    body: CreateRoomRequest,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> Room:
    """Create a room with the caller as creator and first participant.

    Accounts in ``participantIds`` are added directly. Each address in
    ``inviteEmails`` goes through the invitation flow; addresses that
    already belong to a participant are skipped.
    """
    emails = list(dict.fromkeys(normalize_email(e) for e in body.inviteEmails))
    room = services.store.create_room(
        body.name,
        identity.userId,
        participant_ids=body.participantIds,
        description=body.description,
        icon=body.icon,
    )
    for email in emails:
        try:
            result = services.invitations.invite(room.id, identity.userId, email)
        except AlreadyMember:
            logger.info("[Rooms] %s already participates in new room %s, not inviting", email, room.id)
            continue
        _queue_invite_mail(background_tasks, services, result, room.name, identity.username)

    if emails:
        room = services.store.get_room_for_member(room.id, identity.userId)
    return room


@router.get("/{room_id}", response_model=Room)
async def get_room(
    room_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> Room:
    return services.store.get_room_for_member(room_id, identity.userId)


@router.put("/{room_id}", response_model=Room)
async def update_room(
    room_id: str,
    body: UpdateRoomRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> Room:
    return services.store.update_room(
        room_id,
        identity.userId,
        name=body.name,
        description=body.description,
        icon=body.icon,
    )


# =============================================================================
# Members
# =============================================================================


@router.post("/{room_id}/members")
async def add_member(
    room_id: str,
    body: AddMemberRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> dict:
    """Add an existing account to the room directly (no invitation)."""
    added = services.store.add_participant(room_id, body.userId, by_user_id=identity.userId)
    return {
        "message": "User added successfully" if added else "User is already a member",
        "added": added,
    }


@router.delete("/{room_id}/members/{user_id}")
async def remove_member(
    room_id: str,
    user_id: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> dict:
    """Remove a participant and revoke their live registrations for the room."""
    services.store.remove_participant(room_id, user_id, by_user_id=identity.userId)
    revoked = services.registry.revoke(room_id, user_id)
    return {"message": "User removed successfully", "revokedConnections": revoked}


# =============================================================================
# Invitations
# =============================================================================


@router.post("/{room_id}/invites", response_model=InviteResponse, status_code=201)
async def invite(
    room_id: str,
    body: InviteRequest,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> InviteResponse:
    result = services.invitations.invite(room_id, identity.userId, body.email)
    room = services.store.get_room_for_member(room_id, identity.userId)
    _queue_invite_mail(background_tasks, services, result, room.name, identity.username)
    return _invite_response(result)


@router.delete("/{room_id}/invites/{invite_ref}")
async def cancel_invite(
    room_id: str,
    invite_ref: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> dict:
    invitation = services.invitations.cancel(room_id, identity.userId, invite_ref)
    return {"message": "Invitation cancelled successfully", "inviteId": invitation.id}


@invites_router.get("/{token}", response_model=InviteResolution)
async def resolve_invite(
    token: str,
    services: Services = Depends(get_services),
) -> InviteResolution:
    return services.invitations.resolve(token)


@invites_router.post("/{token}/accept")
async def accept_invite(
    token: str,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> dict:
    room = services.invitations.accept(token, identity.userId)
    return {"message": "Invitation accepted", "room": room.model_dump()}


# =============================================================================
# Messages
# =============================================================================


@router.get("/{room_id}/messages", response_model=HistoryResponse)
async def message_history(
    room_id: str,
    before: Optional[str] = Query(None, description="Return messages older than this message id"),
    limit: Optional[int] = Query(None, ge=1, description="Page size"),
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> HistoryResponse:
    """One page of history, selected newest first and returned oldest first.

    Example:
        GET /rooms/abc/messages?limit=20
        GET /rooms/abc/messages?before=<first id of previous page>&limit=20
    """
    realtime = services.config.realtime
    page_size = min(limit or realtime.default_page_size, realtime.max_page_size)
    messages, has_more = services.store.message_history(room_id, identity.userId, before, page_size)
    return HistoryResponse(messages=messages, hasMore=has_more)


@router.post("/{room_id}/messages", status_code=201)
async def post_message(
    room_id: str,
    body: SendMessageRequest,
    identity: Identity = Depends(get_current_identity),
    services: Services = Depends(get_services),
) -> dict:
    message = services.pipeline.post(identity.userId, room_id, body.content, body.clientId)
    return {"message": message.model_dump(mode="json"), "clientId": body.clientId}
