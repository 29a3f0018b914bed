"""MessagePipeline — persist, then broadcast.

A message becomes visible to a room only after ``RoomStore.append_message``
has committed it. If the write fails nothing is broadcast and the error
propagates to the caller, who reports ``failed`` for the client's pending
entry. Write and broadcast happen without an await in between, so the
order in which a room's members receive messages is the order in which the
writes committed.
"""
import logging
from typing import Optional

from ..errors import NotAMember
from ..rooms.schemas import Message
from ..rooms.store import RoomStore
from .broadcaster import RoomBroadcaster
from .connection import Connection
from .presence import TypingTracker

logger = logging.getLogger(__name__)


def new_message_event(message: Message, client_id: Optional[str] = None) -> dict:
    event = {"type": "newMessage", "message": message.model_dump(mode="json")}
    if client_id:
        event["clientId"] = client_id
    return event


class MessagePipeline:
    """Sends chat messages on behalf of websocket connections and HTTP callers."""

    def __init__(self, store: RoomStore, broadcaster: RoomBroadcaster, typing: TypingTracker) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._typing = typing

    def send(
        self,
        connection: Connection,
        room_id: str,
        content: str,
        client_id: Optional[str] = None,
    ) -> Message:
        """Send from a live connection. The connection must have joined the room.

        The sending connection's copy of ``newMessage`` carries ``client_id``;
        everyone else gets the same event without it.

        Raises:
            NotAMember: Not joined, or no longer a participant.
            ValidationError: Empty content.
            TransientStoreError: The store stayed unavailable.
        """
        if room_id not in connection.rooms:
            raise NotAMember("Join the room before sending messages")
        return self._deliver(room_id, connection.user_id, content, client_id, connection.connection_id)

    def post(self, user_id: str, room_id: str, content: str, client_id: Optional[str] = None) -> Message:
        """Send on behalf of an authenticated HTTP caller (no live connection)."""
        return self._deliver(room_id, user_id, content, client_id, None)

    def _deliver(
        self,
        room_id: str,
        user_id: str,
        content: str,
        client_id: Optional[str],
        origin: Optional[str],
    ) -> Message:
        message = self._store.append_message(room_id, user_id, content)

        variants = None
        if origin is not None and client_id:
            variants = {origin: new_message_event(message, client_id)}
        delivered = self._broadcaster.broadcast(room_id, new_message_event(message), variants=variants)

        self._typing.clear(room_id, user_id)
        logger.info(
            "[Pipeline] Message %s from %s in room %s delivered to %d connection(s)",
            message.id, user_id, room_id, delivered,
        )
        return message
