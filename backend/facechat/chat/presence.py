"""Typing indicators.

One ephemeral cell per (room, user), last write wins. A ``True`` write is
broadcast at most once per debounce window while the user keeps typing; a
``False`` write is broadcast immediately. Cells not refreshed within the
expiry window are treated as not typing when next read. Nothing here is
persisted.

Typing events go to everyone in the room except the typist's own
connections.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .broadcaster import RoomBroadcaster
from .connection import Connection

logger = logging.getLogger(__name__)


@dataclass
class TypingCell:
    connection_id: str
    username: str
    updated_at: float
    broadcast_at: float


class TypingTracker:
    """Debounced per-(room, user) typing state."""

    def __init__(
        self,
        broadcaster: RoomBroadcaster,
        debounce_seconds: float = 2.0,
        expiry_seconds: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._broadcaster = broadcaster
        self._debounce = debounce_seconds
        self._expiry = expiry_seconds
        self._clock = clock
        self._cells: Dict[Tuple[str, str], TypingCell] = {}

    def _live_cell(self, key: Tuple[str, str], now: float) -> Optional[TypingCell]:
        cell = self._cells.get(key)
        if cell is not None and now - cell.updated_at > self._expiry:
            del self._cells[key]
            return None
        return cell

    def _announce(self, room_id: str, user_id: str, username: str, is_typing: bool) -> None:
        self._broadcaster.broadcast(
            room_id,
            {
                "type": "userTyping",
                "roomId": room_id,
                "userId": user_id,
                "username": username,
                "isTyping": is_typing,
            },
            exclude_user=user_id,
        )

    def set_typing(self, connection: Connection, room_id: str, is_typing: bool) -> bool:
        """Record a typing signal from ``connection``.

        Returns:
            True if a ``userTyping`` event was broadcast.
        """
        key = (room_id, connection.user_id)
        now = self._clock()
        cell = self._live_cell(key, now)

        if not is_typing:
            if cell is None:
                return False
            del self._cells[key]
            self._announce(room_id, connection.user_id, connection.username, False)
            return True

        if cell is not None and now - cell.broadcast_at < self._debounce:
            cell.updated_at = now
            cell.connection_id = connection.connection_id
            return False

        self._cells[key] = TypingCell(
            connection_id=connection.connection_id,
            username=connection.username,
            updated_at=now,
            broadcast_at=now,
        )
        self._announce(room_id, connection.user_id, connection.username, True)
        return True

    def clear(self, room_id: str, user_id: str, connection_id: Optional[str] = None) -> bool:
        """Drop the user's typing state in a room, announcing the stop.

        With ``connection_id``, only a cell last written by that connection is
        cleared, so one tab closing does not cancel typing in another.
        """
        key = (room_id, user_id)
        cell = self._live_cell(key, self._clock())
        if cell is None:
            return False
        if connection_id is not None and cell.connection_id != connection_id:
            return False
        del self._cells[key]
        self._announce(room_id, user_id, cell.username, False)
        return True

    def clear_connection(self, connection: Connection) -> int:
        cleared = 0
        for room_id in list(connection.rooms):
            if self.clear(room_id, connection.user_id, connection.connection_id):
                cleared += 1
        return cleared

    def is_typing(self, room_id: str, user_id: str) -> bool:
        return self._live_cell((room_id, user_id), self._clock()) is not None
