"""DuckDB-backed durable storage shared by the user directory and the room store.

One DuckDB connection is opened per process. Every unit of work runs on its
own cursor (a duplicate connection to the same database) inside an explicit
transaction, so callers on different threads never share cursor state and
DuckDB's optimistic concurrency control detects conflicting writes.

Database Schema:
    users              - accounts (username and lowercased email are unique)
    rooms              - room metadata plus a ``version`` bumped by every
                         membership/invitation mutation
    room_participants  - (room_id, user_id) pairs, ordered by ``position``
    room_invites       - pending invitations, always scoped to one room
    messages           - chat messages, ordered by ``seq``

Concurrency:
    A write that loses a race raises ``duckdb.TransactionException`` (or a
    constraint error for a racing insert). ``Database.transaction`` rolls back
    and re-runs the whole unit of work a bounded number of times, then raises
    ``TransientStoreError``. Domain errors raised inside the unit of work roll
    back and propagate immediately.

    Units of work run synchronously on the calling thread, which for the
    realtime path is the event loop. The default backoff between retries is
    therefore zero; a non-zero ``retry_backoff_s`` pauses through the
    injected ``sleep`` and is meant for deployments that call the store from
    worker threads.
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Type, TypeVar

import duckdb

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS participant_position_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS message_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id            VARCHAR PRIMARY KEY,
        username      VARCHAR NOT NULL UNIQUE,
        email         VARCHAR NOT NULL UNIQUE,
        password_hash VARCHAR NOT NULL,
        face_template VARCHAR NOT NULL,
        created_at    TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id          VARCHAR PRIMARY KEY,
        name        VARCHAR NOT NULL,
        description VARCHAR NOT NULL DEFAULT '',
        icon        VARCHAR,
        creator_id  VARCHAR NOT NULL,
        version     BIGINT NOT NULL DEFAULT 0,
        created_at  TIMESTAMP NOT NULL,
        updated_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_participants (
        room_id        VARCHAR NOT NULL,
        user_id        VARCHAR NOT NULL,
        position       BIGINT NOT NULL DEFAULT nextval('participant_position_seq'),
        joined_at      TIMESTAMP NOT NULL,
        last_posted_at TIMESTAMP,
        PRIMARY KEY (room_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room_invites (
        id         VARCHAR PRIMARY KEY,
        room_id    VARCHAR NOT NULL,
        email      VARCHAR NOT NULL,
        status     VARCHAR NOT NULL DEFAULT 'pending',
        token      VARCHAR NOT NULL,
        invited_by VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id         VARCHAR PRIMARY KEY,
        seq        BIGINT NOT NULL DEFAULT nextval('message_seq'),
        room_id    VARCHAR NOT NULL,
        sender_id  VARCHAR NOT NULL,
        content    VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL
    )
    """,
]

# Errors that mean "another writer got there first"; the unit of work is re-run.
RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    duckdb.TransactionException,
    duckdb.ConstraintException,
    duckdb.IOException,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """Owns the DuckDB connection and runs transactional units of work.

    Attributes:
        db_path: Path to the DuckDB file, or ":memory:".
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        max_retries: int = 3,
        retry_backoff_s: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = db_path
        self._max_retries = max(1, max_retries)
        self._retry_backoff_s = retry_backoff_s
        self._sleep = sleep
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        self._initialize_db()
        logger.info("[Store] DuckDB ready at %s (max_retries=%d)", db_path, self._max_retries)

    def _initialize_db(self) -> None:
        """Create tables and sequences. Safe to call repeatedly."""
        for statement in _SCHEMA:
            self._get_connection().execute(statement)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise TransientStoreError("Database connection is closed")
        return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        # The parent connection is not thread-safe; cursors are.
        with self._lock:
            return self._get_connection().cursor()

    def transaction(self, work: Callable[[duckdb.DuckDBPyConnection], T], *, label: str) -> T:
        """Run ``work(cursor)`` inside BEGIN/COMMIT, retrying on write conflicts.

        Args:
            work: Callable receiving a cursor. Must be safe to re-run from the
                start; it must not have side effects outside the database.
            label: Operation name used in log lines.

        Returns:
            Whatever ``work`` returns.

        Raises:
            TransientStoreError: If every attempt hit a retryable error.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self._max_retries + 1):
            cursor = self._cursor()
            try:
                cursor.execute("BEGIN TRANSACTION")
                result = work(cursor)
                cursor.execute("COMMIT")
                return result
            except RETRYABLE_ERRORS as exc:
                self._rollback(cursor)
                last_error = exc
                logger.warning(
                    "[Store] %s attempt %d/%d hit a conflicting write: %s",
                    label, attempt, self._max_retries, exc,
                )
                if attempt < self._max_retries and self._retry_backoff_s > 0:
                    self._sleep(self._retry_backoff_s * attempt)
            except BaseException:
                self._rollback(cursor)
                raise
            finally:
                cursor.close()

        logger.error("[Store] %s gave up after %d attempts", label, self._max_retries)
        raise TransientStoreError(f"Storage is busy, could not complete {label}") from last_error

    def read(self, work: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Run a read-only ``work(cursor)`` on a fresh cursor."""
        cursor = self._cursor()
        try:
            return work(cursor)
        except duckdb.IOException as exc:
            raise TransientStoreError("Storage is temporarily unavailable") from exc
        finally:
            cursor.close()

    @staticmethod
    def _rollback(cursor: duckdb.DuckDBPyConnection) -> None:
        try:
            cursor.execute("ROLLBACK")
        except duckdb.Error as exc:
            # A failed COMMIT already ended the transaction.
            logger.debug("[Store] Rollback skipped: %s", exc)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None
        logger.info("[Store] DuckDB at %s closed", self.db_path)
