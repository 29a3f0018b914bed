"""UserDirectory — DuckDB-backed account storage.

Identity fields never change after signup. Emails are stored lowercased so
lookups are case-insensitive. The directory only hands out ``UserRecord``
objects; hashing and face comparison happen elsewhere.
"""
import logging
import re
import uuid
from typing import Optional

from ..database import Clock, Database, utcnow
from ..errors import Conflict, ValidationError
from .schemas import UserRecord

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_COLUMNS = "id, username, email, password_hash, face_template, created_at"


def normalize_email(email: str) -> str:
    """Lowercase and validate an email address."""
    normalized = (email or "").strip().lower()
    if not _EMAIL_RE.match(normalized):
        raise ValidationError(f"Invalid email address: {email!r}")
    return normalized


def _row_to_user(row) -> UserRecord:
    return UserRecord(
        id=row[0],
        username=row[1],
        email=row[2],
        passwordHash=row[3],
        faceTemplate=row[4],
        createdAt=row[5],
    )


class UserDirectory:
    """Creates and looks up accounts."""

    def __init__(self, database: Database, clock: Clock = utcnow) -> None:
        self._db = database
        self._clock = clock

    def create(
        self,
        username: str,
        email: str,
        password_hash: str,
        face_template: str,
    ) -> UserRecord:
        """Create an account.

        Raises:
            ValidationError: Missing username or malformed email.
            Conflict: Username or email already taken.
        """
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        email = normalize_email(email)
        user_id = str(uuid.uuid4())
        now = self._clock()

        def work(cur):
            taken = cur.execute(
                "SELECT 1 FROM users WHERE username = ? OR email = ? LIMIT 1",
                [username, email],
            ).fetchone()
            if taken:
                raise Conflict("User already exists with this email or username")
            cur.execute(
                f"INSERT INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                [user_id, username, email, password_hash, face_template, now],
            )
            return _row_to_user(
                cur.execute(f"SELECT {_COLUMNS} FROM users WHERE id = ?", [user_id]).fetchone()
            )

        user = self._db.transaction(work, label="create_user")
        logger.info("[Users] Created user %s (%s)", user.id, user.username)
        return user

    def get(self, user_id: str) -> Optional[UserRecord]:
        row = self._db.read(
            lambda cur: cur.execute(
                f"SELECT {_COLUMNS} FROM users WHERE id = ?", [user_id]
            ).fetchone()
        )
        return _row_to_user(row) if row else None

    def get_by_username(self, username: str) -> Optional[UserRecord]:
        row = self._db.read(
            lambda cur: cur.execute(
                f"SELECT {_COLUMNS} FROM users WHERE username = ?", [(username or "").strip()]
            ).fetchone()
        )
        return _row_to_user(row) if row else None
