"""Room fan-out.

``RoomBroadcaster`` keeps, per room, the connections registered to receive
that room's events. ``broadcast`` never awaits: it snapshots the fan-out set
and puts the event on each connection's outbound queue, so the enqueue order
of two broadcasts is the order in which they were called. Connections whose
queue is full are handed to the drop handler (the registry disconnects them)
and never hold up delivery to anyone else.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from .connection import Connection

logger = logging.getLogger(__name__)

DropHandler = Callable[[Connection, str], None]


class RoomBroadcaster:
    """Per-room fan-out sets and best-effort event delivery."""

    def __init__(self) -> None:
        # room_id -> {connection_id -> Connection}
        self._rooms: Dict[str, Dict[str, Connection]] = {}
        self._on_drop: Optional[DropHandler] = None

    def set_drop_handler(self, handler: DropHandler) -> None:
        self._on_drop = handler

    def register(self, room_id: str, connection: Connection) -> bool:
        """Add a connection to a room's fan-out set.

        Returns:
            False if it was already registered.
        """
        members = self._rooms.setdefault(room_id, {})
        if connection.connection_id in members:
            return False
        members[connection.connection_id] = connection
        return True

    def unregister(self, room_id: str, connection_id: str) -> bool:
        members = self._rooms.get(room_id)
        if not members or members.pop(connection_id, None) is None:
            return False
        if not members:
            del self._rooms[room_id]
        return True

    def members(self, room_id: str) -> List[Connection]:
        return list(self._rooms.get(room_id, {}).values())

    def room_size(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    def broadcast(
        self,
        room_id: str,
        event: Dict[str, Any],
        *,
        exclude_user: Optional[str] = None,
        variants: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> int:
        """Deliver ``event`` to every connection registered for ``room_id``.

        The originating connection is included unless ``exclude_user`` names
        its user.

        Args:
            room_id: Target room.
            event: JSON-serializable event.
            exclude_user: Skip every connection belonging to this user.
            variants: connection_id -> event to send to that connection
                instead of ``event``.

        Returns:
            Number of connections the event was queued for.
        """
        delivered = 0
        dropped: List[Connection] = []
        for connection in self.members(room_id):
            if exclude_user is not None and connection.user_id == exclude_user:
                continue
            payload = variants.get(connection.connection_id, event) if variants else event
            if connection.enqueue(payload):
                delivered += 1
            else:
                dropped.append(connection)

        for connection in dropped:
            logger.warning(
                "[Broadcast] Dropping %s from room %s: outbound queue full",
                connection.describe(), room_id,
            )
            self.unregister(room_id, connection.connection_id)
            connection.rooms.discard(room_id)
            if self._on_drop is not None:
                self._on_drop(connection, "outbound-queue-full")

        logger.debug(
            "[Broadcast] %s to room %s: %d delivered, %d dropped",
            event.get("type"), room_id, delivered, len(dropped),
        )
        return delivered
