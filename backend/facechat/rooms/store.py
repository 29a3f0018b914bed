"""RoomStore — the single source of truth for rooms, membership, invites and messages.

Every mutation of a room's membership or invitations is one DuckDB
transaction that starts with a conditional write on the room row::

    UPDATE rooms SET version = version + 1
    WHERE id = ? AND <actor is a participant>

Two transactions touching the same room therefore always write the same row,
and DuckDB aborts the loser with a write-write conflict instead of letting
both commit (no lost updates between cancel/accept/re-invite/remove). The
loser is re-run by ``Database.transaction`` and observes the winner's result.
The state transitions themselves are conditional statements
(``DELETE ... RETURNING``, ``INSERT ... ON CONFLICT DO NOTHING``,
``UPDATE ... WHERE status = 'pending'``); when one matches nothing, the
store reads just enough to say why and raises the matching error.

Authorization:
    Reads go through ``get_room_for_member``: a room you are not in looks
    exactly like a room that does not exist (``NotFound``). Mutations by a
    non-participant raise ``Forbidden``.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from ..database import Clock, Database, utcnow
from ..errors import (
    AlreadyMember,
    Expired,
    Forbidden,
    NotAMember,
    NotFound,
    ValidationError,
)
from .schemas import (
    Invitation,
    InviteResolution,
    InviteResult,
    InviteStatus,
    Message,
    Participant,
    Room,
    RoomRef,
)

logger = logging.getLogger(__name__)

_INVITE_COLUMNS = "id, room_id, email, status, token, created_at, expires_at"

_MESSAGE_SELECT = """
    SELECT m.id, m.room_id, m.sender_id, COALESCE(u.username, ''), m.content, m.created_at
    FROM messages m
    LEFT JOIN users u ON u.id = m.sender_id
"""

_ACTOR_IS_PARTICIPANT = (
    " AND EXISTS (SELECT 1 FROM room_participants p"
    " WHERE p.room_id = rooms.id AND p.user_id = ?)"
)


def _row_to_invitation(row, now: datetime) -> Invitation:
    status = InviteStatus(row[3])
    if status == InviteStatus.PENDING and row[6] <= now:
        status = InviteStatus.EXPIRED
    return Invitation(
        id=row[0],
        roomId=row[1],
        email=row[2],
        status=status,
        token=row[4],
        createdAt=row[5],
        expiresAt=row[6],
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        roomId=row[1],
        senderId=row[2],
        senderUsername=row[3],
        content=row[4],
        createdAt=row[5],
    )


class RoomStore:
    """DuckDB-backed room, membership, invitation and message storage."""

    def __init__(self, database: Database, clock: Clock = utcnow) -> None:
        self._db = database
        self._clock = clock

    # -----------------------------------------------------------------------
    # Cursor-level helpers (called inside a unit of work)
    # -----------------------------------------------------------------------

    @staticmethod
    def _is_participant(cur, room_id: str, user_id: str) -> bool:
        return cur.execute(
            "SELECT 1 FROM room_participants WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        ).fetchone() is not None

    @staticmethod
    def _bump(cur, room_id: str, now: datetime, actor_id: Optional[str] = None) -> bool:
        """Claim the room row for this transaction.

        Returns False if the room does not exist or, when ``actor_id`` is
        given, the actor is not a participant.
        """
        sql = "UPDATE rooms SET version = version + 1, updated_at = ? WHERE id = ?"
        params = [now, room_id]
        if actor_id is not None:
            sql += _ACTOR_IS_PARTICIPANT
            params.append(actor_id)
        return cur.execute(sql + " RETURNING version", params).fetchone() is not None

    @staticmethod
    def _load_room(cur, room_id: str, now: datetime) -> Optional[Room]:
        row = cur.execute(
            "SELECT id, name, description, icon, creator_id, created_at, updated_at "
            "FROM rooms WHERE id = ?",
            [room_id],
        ).fetchone()
        if row is None:
            return None
        participants = cur.execute(
            """
            SELECT p.user_id, COALESCE(u.username, '')
            FROM room_participants p
            LEFT JOIN users u ON u.id = p.user_id
            WHERE p.room_id = ?
            ORDER BY p.position
            """,
            [room_id],
        ).fetchall()
        invites = cur.execute(
            f"SELECT {_INVITE_COLUMNS} FROM room_invites WHERE room_id = ? "
            "ORDER BY created_at, id",
            [room_id],
        ).fetchall()
        return Room(
            id=row[0],
            name=row[1],
            description=row[2] or "",
            icon=row[3],
            creatorId=row[4],
            createdAt=row[5],
            updatedAt=row[6],
            participants=[Participant(id=p[0], username=p[1]) for p in participants],
            pendingInvites=[_row_to_invitation(i, now) for i in invites],
        )

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def create_room(
        self,
        name: str,
        creator_id: str,
        participant_ids: Iterable[str] = (),
        description: str = "",
        icon: Optional[str] = None,
    ) -> Room:
        """Create a room. The creator is always the first participant.

        Unknown ids in ``participant_ids`` are skipped.

        Raises:
            ValidationError: If the name is empty after trimming.
            NotFound: If the creator has no account.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Room name is required")
        room_id = str(uuid.uuid4())
        now = self._clock()
        others = [pid for pid in dict.fromkeys(participant_ids) if pid and pid != creator_id]

        def work(cur):
            if cur.execute("SELECT 1 FROM users WHERE id = ?", [creator_id]).fetchone() is None:
                raise NotFound("User not found")
            cur.execute(
                "INSERT INTO rooms (id, name, description, icon, creator_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [room_id, name, description or "", icon, creator_id, now, now],
            )
            cur.execute(
                "INSERT INTO room_participants (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                [room_id, creator_id, now],
            )
            for participant_id in others:
                added = cur.execute(
                    "INSERT INTO room_participants (room_id, user_id, joined_at) "
                    "SELECT ?, id, ? FROM users WHERE id = ? "
                    "ON CONFLICT DO NOTHING RETURNING user_id",
                    [room_id, now, participant_id],
                ).fetchone()
                if added is None:
                    logger.info("[Store] Skipping unknown participant %s for new room", participant_id)
            return self._load_room(cur, room_id, now)

        room = self._db.transaction(work, label="create_room")
        logger.info(
            "[Store] Room %s (%r) created by %s with %d participants",
            room.id, room.name, creator_id, len(room.participants),
        )
        return room

    def get_room_for_member(self, room_id: str, user_id: str) -> Room:
        """Return the room only if ``user_id`` participates in it.

        Pending invites past their expiry are flipped to ``expired`` here.

        Raises:
            NotFound: If the room does not exist or the user is not a member.
        """
        now = self._clock()

        def work(cur):
            if not self._is_participant(cur, room_id, user_id):
                raise NotFound("Chat room not found or access denied")
            cur.execute(
                "UPDATE room_invites SET status = 'expired' "
                "WHERE room_id = ? AND status = 'pending' AND expires_at <= ?",
                [room_id, now],
            )
            return self._load_room(cur, room_id, now)

        return self._db.transaction(work, label="get_room_for_member")

    def list_rooms_for_user(self, user_id: str) -> List[Room]:
        """All rooms the user participates in, newest first."""
        now = self._clock()

        def work(cur):
            room_ids = cur.execute(
                """
                SELECT r.id FROM rooms r
                JOIN room_participants p ON p.room_id = r.id
                WHERE p.user_id = ?
                ORDER BY r.created_at DESC, r.id
                """,
                [user_id],
            ).fetchall()
            rooms = (self._load_room(cur, row[0], now) for row in room_ids)
            return [room for room in rooms if room is not None]

        return self._db.read(work)

    def is_participant(self, room_id: str, user_id: str) -> bool:
        return self._db.read(lambda cur: self._is_participant(cur, room_id, user_id))

    def update_room(
        self,
        room_id: str,
        by_user_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        icon: Optional[str] = None,
    ) -> Room:
        """Rename / re-describe / change the icon of a room. Creator only.

        Raises:
            ValidationError: If ``name`` is given but empty.
            Forbidden: If the actor is a participant but not the creator.
            NotFound: If the actor cannot see the room.
        """
        fields = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Room name is required")
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        if icon is not None:
            fields["icon"] = icon
        if not fields:
            return self.get_room_for_member(room_id, by_user_id)

        now = self._clock()
        set_clause = ", ".join(f"{column} = ?" for column in fields)

        def work(cur):
            updated = cur.execute(
                f"UPDATE rooms SET {set_clause}, version = version + 1, updated_at = ? "
                "WHERE id = ? AND creator_id = ?" + _ACTOR_IS_PARTICIPANT + " RETURNING id",
                list(fields.values()) + [now, room_id, by_user_id, by_user_id],
            ).fetchone()
            if updated is None:
                if self._is_participant(cur, room_id, by_user_id):
                    raise Forbidden("Only the room creator can change room settings")
                raise NotFound("Chat room not found or access denied")
            return self._load_room(cur, room_id, now)

        room = self._db.transaction(work, label="update_room")
        logger.info("[Store] Room %s updated by creator %s: %s", room_id, by_user_id, sorted(fields))
        return room

    # -----------------------------------------------------------------------
    # Membership
    # -----------------------------------------------------------------------

    def add_participant(self, room_id: str, user_id: str, by_user_id: Optional[str] = None) -> bool:
        """Add an existing account to the room. Idempotent.

        Any pending invite for the new participant's email is removed in the
        same transaction.

        Args:
            room_id: The room.
            user_id: The account to add.
            by_user_id: Acting participant, if the call is on someone's behalf.

        Returns:
            True if the user was added, False if they already participated.

        Raises:
            Forbidden: ``by_user_id`` is not a participant (or no such room).
            NotFound: No such room (without an actor) or no such user.
        """
        now = self._clock()

        def work(cur):
            if not self._bump(cur, room_id, now, by_user_id):
                if by_user_id is not None:
                    raise Forbidden("You are not a member of this chat room")
                raise NotFound("Chat room not found")
            user = cur.execute("SELECT email FROM users WHERE id = ?", [user_id]).fetchone()
            if user is None:
                raise NotFound("User not found")
            added = cur.execute(
                "INSERT INTO room_participants (room_id, user_id, joined_at) VALUES (?, ?, ?) "
                "ON CONFLICT DO NOTHING RETURNING user_id",
                [room_id, user_id, now],
            ).fetchone() is not None
            cur.execute(
                "DELETE FROM room_invites WHERE room_id = ? AND email = ?",
                [room_id, user[0]],
            )
            return added

        added = self._db.transaction(work, label="add_participant")
        if added:
            logger.info("[Store] User %s added to room %s", user_id, room_id)
        return added

    def remove_participant(self, room_id: str, user_id: str, by_user_id: str) -> None:
        """Remove a participant. Any current participant may remove any other.

        Raises:
            Forbidden: The actor is not a participant (or no such room).
            NotAMember: ``user_id`` does not participate in the room.
        """
        now = self._clock()

        def work(cur):
            if not self._bump(cur, room_id, now, by_user_id):
                raise Forbidden("You are not a member of this chat room")
            removed = cur.execute(
                "DELETE FROM room_participants WHERE room_id = ? AND user_id = ? RETURNING user_id",
                [room_id, user_id],
            ).fetchone()
            if removed is None:
                raise NotAMember("User is not a member of this chat room")

        self._db.transaction(work, label="remove_participant")
        logger.info("[Store] User %s removed from room %s by %s", user_id, room_id, by_user_id)

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append_message(self, room_id: str, sender_id: str, content: str) -> Message:
        """Durably record a message.

        The membership check is itself a write on the sender's participant
        row, so a removal committed concurrently conflicts with the append
        instead of racing past it.

        Raises:
            ValidationError: If content is empty after trimming.
            NotAMember: If the sender does not participate in the room.
        """
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content cannot be empty")
        message_id = str(uuid.uuid4())
        now = self._clock()

        def work(cur):
            touched = cur.execute(
                "UPDATE room_participants SET last_posted_at = ? "
                "WHERE room_id = ? AND user_id = ? RETURNING user_id",
                [now, room_id, sender_id],
            ).fetchone()
            if touched is None:
                raise NotAMember()
            cur.execute(
                "INSERT INTO messages (id, room_id, sender_id, content, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [message_id, room_id, sender_id, text, now],
            )
            return _row_to_message(
                cur.execute(_MESSAGE_SELECT + " WHERE m.id = ?", [message_id]).fetchone()
            )

        return self._db.transaction(work, label="append_message")

    def message_history(
        self,
        room_id: str,
        user_id: str,
        before: Optional[str] = None,
        limit: int = 50,
    ) -> Tuple[List[Message], bool]:
        """Page through a room's messages, newest first.

        The newest ``limit`` messages older than the ``before`` cursor are
        selected and returned oldest first, so the most recent message is
        the last entry.

        Args:
            room_id: The room.
            user_id: The reader; must participate in the room.
            before: Message id cursor. Only older messages are returned.
            limit: Page size.

        Returns:
            Tuple of (messages, has_more).

        Raises:
            NotFound: Room not visible to the reader, or unknown cursor.
        """
        limit = max(1, limit)

        def work(cur):
            if not self._is_participant(cur, room_id, user_id):
                raise NotFound("Chat room not found or access denied")
            sql = _MESSAGE_SELECT + " WHERE m.room_id = ?"
            params: list = [room_id]
            if before:
                cursor_row = cur.execute(
                    "SELECT seq FROM messages WHERE id = ? AND room_id = ?", [before, room_id]
                ).fetchone()
                if cursor_row is None:
                    raise NotFound("Message not found")
                sql += " AND m.seq < ?"
                params.append(cursor_row[0])
            sql += " ORDER BY m.seq DESC LIMIT ?"
            params.append(limit + 1)
            return cur.execute(sql, params).fetchall()

        rows = self._db.read(work)
        has_more = len(rows) > limit
        messages = [_row_to_message(r) for r in rows[:limit]]
        messages.reverse()
        return messages, has_more

    # -----------------------------------------------------------------------
    # Invitations
    # -----------------------------------------------------------------------

    def upsert_invite(
        self,
        room_id: str,
        by_user_id: str,
        email: str,
        token: str,
        ttl: timedelta,
    ) -> InviteResult:
        """Create, refresh or revive the single invite for ``(room, email)``.

        * A live pending invite gets a fresh ``expiresAt`` and keeps its token.
        * An expired one is revived with the new ``token``.
        * Otherwise a new invite is inserted.

        Raises:
            Forbidden: The inviter is not a participant (or no such room).
            AlreadyMember: An account with that email already participates.
        """
        now = self._clock()
        expires_at = now + ttl

        def work(cur):
            if not self._bump(cur, room_id, now, by_user_id):
                raise Forbidden("You are not a member of this chat room")
            already = cur.execute(
                """
                SELECT 1 FROM room_participants p
                JOIN users u ON u.id = p.user_id
                WHERE p.room_id = ? AND u.email = ?
                """,
                [room_id, email],
            ).fetchone()
            if already:
                raise AlreadyMember()

            refreshed = cur.execute(
                f"UPDATE room_invites SET expires_at = ?, invited_by = ? "
                f"WHERE room_id = ? AND email = ? AND status = 'pending' AND expires_at > ? "
                f"RETURNING {_INVITE_COLUMNS}",
                [expires_at, by_user_id, room_id, email, now],
            ).fetchone()
            if refreshed is not None:
                return refreshed, True

            revived = cur.execute(
                f"UPDATE room_invites SET status = 'pending', token = ?, created_at = ?, "
                f"expires_at = ?, invited_by = ? WHERE room_id = ? AND email = ? "
                f"RETURNING {_INVITE_COLUMNS}",
                [token, now, expires_at, by_user_id, room_id, email],
            ).fetchone()
            if revived is not None:
                return revived, False

            created = cur.execute(
                f"INSERT INTO room_invites (id, room_id, email, status, token, invited_by, "
                f"created_at, expires_at) VALUES (?, ?, ?, 'pending', ?, ?, ?, ?) "
                f"RETURNING {_INVITE_COLUMNS}",
                [str(uuid.uuid4()), room_id, email, token, by_user_id, now, expires_at],
            ).fetchone()
            return created, False

        row, was_refreshed = self._db.transaction(work, label="upsert_invite")
        invitation = _row_to_invitation(row, now)
        return InviteResult(invitation=invitation, token=invitation.token, refreshed=was_refreshed)

    def cancel_invite(self, room_id: str, by_user_id: str, invite_ref: str) -> Invitation:
        """Delete a pending invite identified by id or token.

        Raises:
            Forbidden: The actor is not a participant (or no such room).
            NotFound: No pending invite matches.
        """
        now = self._clock()

        def work(cur):
            if not self._bump(cur, room_id, now, by_user_id):
                raise Forbidden("You are not a member of this chat room")
            row = cur.execute(
                f"DELETE FROM room_invites WHERE room_id = ? AND (id = ? OR token = ?) "
                f"AND status = 'pending' RETURNING {_INVITE_COLUMNS}",
                [room_id, invite_ref, invite_ref],
            ).fetchone()
            if row is None:
                raise NotFound("Invitation not found")
            return row

        return _row_to_invitation(self._db.transaction(work, label="cancel_invite"), now)

    def claim_invite(self, token: str, user_id: str) -> RoomRef:
        """Consume an invite: add the claimant and delete the invite together.

        The claimant's account email must be the invited email.

        Raises:
            NotFound: Unknown or already consumed token, or unknown user.
            Expired: The invite is past its expiry (it is marked expired).
            Forbidden: The token was issued to a different email.
        """
        now = self._clock()

        def work(cur):
            located = cur.execute(
                "SELECT room_id FROM room_invites WHERE token = ?", [token]
            ).fetchone()
            if located is None:
                raise NotFound("Invitation not found or already used")
            room_id = located[0]
            if not self._bump(cur, room_id, now):
                raise NotFound("Invitation not found or already used")
            user = cur.execute("SELECT email FROM users WHERE id = ?", [user_id]).fetchone()
            if user is None:
                raise NotFound("User not found")

            claimed = cur.execute(
                "DELETE FROM room_invites WHERE token = ? AND room_id = ? AND status = 'pending' "
                "AND expires_at > ? AND email = ? RETURNING id",
                [token, room_id, now, user[0]],
            ).fetchone()
            if claimed is not None:
                cur.execute(
                    "INSERT INTO room_participants (room_id, user_id, joined_at) VALUES (?, ?, ?) "
                    "ON CONFLICT DO NOTHING",
                    [room_id, user_id, now],
                )
                name = cur.execute("SELECT name FROM rooms WHERE id = ?", [room_id]).fetchone()[0]
                return RoomRef(id=room_id, name=name)

            invite = cur.execute(
                "SELECT status, expires_at, email FROM room_invites WHERE token = ? AND room_id = ?",
                [token, room_id],
            ).fetchone()
            if invite is None:
                raise NotFound("Invitation not found or already used")
            status, expires_at, invited_email = invite
            if status == InviteStatus.EXPIRED.value or expires_at <= now:
                cur.execute(
                    "UPDATE room_invites SET status = 'expired' WHERE token = ? AND status = 'pending'",
                    [token],
                )
                # Commit the status flip, then report the expiry.
                return None
            if invited_email != user[0]:
                raise Forbidden("This invitation was sent to a different email address")
            raise NotFound("Invitation not found or already used")

        ref = self._db.transaction(work, label="claim_invite")
        if ref is None:
            raise Expired()
        return ref

    def resolve_invite(self, token: str) -> InviteResolution:
        """Read-only lookup of a live invite by token.

        Raises:
            NotFound: Unknown or consumed token.
            Expired: The invite is past its expiry.
        """
        now = self._clock()
        row = self._db.read(
            lambda cur: cur.execute(
                """
                SELECT i.email, i.room_id, r.name, i.status, i.expires_at,
                       EXISTS (SELECT 1 FROM users u WHERE u.email = i.email)
                FROM room_invites i
                JOIN rooms r ON r.id = i.room_id
                WHERE i.token = ?
                """,
                [token],
            ).fetchone()
        )
        if row is None:
            raise NotFound("Invalid or expired invitation")
        email, room_id, room_name, status, expires_at, user_exists = row
        if status != InviteStatus.PENDING.value or expires_at <= now:
            raise Expired()
        return InviteResolution(
            email=email,
            roomId=room_id,
            roomName=room_name,
            userAlreadyExists=bool(user_exists),
        )
