"""ConnectionRegistry — live websocket connections and their room registrations.

Lifecycle of a connection::

    authenticate(credential)  -> Identity            (AuthError: caller closes, nothing created)
    admit(websocket, identity) -> Connection          (starts the sender task)
    join(connection_id, room_id) / leave(...)         (fan-out registration)
    disconnect(connection_id)                         (client close, send failure, timeout,
                                                       full queue or shutdown)

Membership is re-checked against ``RoomStore`` on every join; the registry
never trusts what a client believes about its own membership.

Thread Safety:
    Designed for a single event loop. Store calls are synchronous, so a join's
    membership check and its registration happen without an intervening await.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from ..auth.schemas import Identity
from ..auth.service import TokenService
from ..errors import NotAMember, NotFound
from ..rooms.schemas import Room
from ..rooms.store import RoomStore
from .broadcaster import RoomBroadcaster
from .connection import DEFAULT_QUEUE_SIZE, Connection
from .presence import TypingTracker

logger = logging.getLogger(__name__)

# Close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY = 1008
CLOSE_AUTH_FAILED = 4401


class ConnectionRegistry:
    """Owns every live ``Connection``.

    Args:
        tokens: Identity verifier for handshake credentials.
        store: Membership source of truth.
        broadcaster: Room fan-out sets.
        typing: Typing state, cleared on leave and disconnect.
        queue_size: Bound of each connection's outbound queue.
        send_timeout: Seconds a single socket send may take before the
            connection is considered dead.
    """

    def __init__(
        self,
        tokens: TokenService,
        store: RoomStore,
        broadcaster: RoomBroadcaster,
        typing: TypingTracker,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        send_timeout: float = 5.0,
    ) -> None:
        self._tokens = tokens
        self._store = store
        self._broadcaster = broadcaster
        self._typing = typing
        self._queue_size = queue_size
        self._send_timeout = send_timeout
        self._connections: Dict[str, Connection] = {}
        self._closers: Set["asyncio.Task[None]"] = set()
        broadcaster.set_drop_handler(self._drop)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        logger.info("[Registry] Started (queue_size=%d, send_timeout=%.1fs)", self._queue_size, self._send_timeout)

    async def stop(self) -> None:
        """Disconnect every connection and wait for pending socket closes."""
        for connection_id in list(self._connections):
            await self.disconnect(connection_id, reason="server-shutdown", code=CLOSE_GOING_AWAY)
        if self._closers:
            await asyncio.gather(*self._closers, return_exceptions=True)
        logger.info("[Registry] Stopped")

    # -----------------------------------------------------------------------
    # Admission
    # -----------------------------------------------------------------------

    def authenticate(self, credential: Optional[str]) -> Identity:
        """Verify a handshake credential. Creates no state.

        Raises:
            AuthError: Typed reason for the rejection.
        """
        return self._tokens.verify(credential)

    def admit(self, websocket: WebSocket, identity: Identity) -> Connection:
        """Register an accepted, authenticated socket and start its sender task."""
        connection = Connection(
            websocket=websocket,
            user_id=identity.userId,
            username=identity.username,
            queue_size=self._queue_size,
        )
        self._connections[connection.connection_id] = connection
        connection.sender_task = asyncio.create_task(self._drain(connection))
        logger.info(
            "[Registry] Admitted %s for user %s. %d connections live",
            connection.describe(), identity.userId, len(self._connections),
        )
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def send(self, connection: Connection, event: Dict[str, Any]) -> bool:
        """Queue an event for one connection. A full queue disconnects it."""
        if connection.enqueue(event):
            return True
        if not connection.closed:
            self._drop(connection, "outbound-queue-full")
        return False

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def _require(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise NotFound("Connection not found")
        return connection

    def join(self, connection_id: str, room_id: str) -> Room:
        """Register the connection in a room's fan-out set after a membership check.

        Raises:
            NotAMember: The user does not participate in the room (or it does
                not exist; the two are indistinguishable).
        """
        connection = self._require(connection_id)
        try:
            room = self._store.get_room_for_member(room_id, connection.user_id)
        except NotFound:
            logger.info("[Registry] %s refused join to room %s", connection.describe(), room_id)
            raise NotAMember("You are not a member of this chat room")

        connection.rooms.add(room_id)
        if self._broadcaster.register(room_id, connection):
            logger.info(
                "[Registry] %s joined room %s (%d listening)",
                connection.describe(), room_id, self._broadcaster.room_size(room_id),
            )
        return room

    def leave(self, connection_id: str, room_id: str) -> bool:
        """Idempotent removal from a room's fan-out set."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        self._typing.clear(room_id, connection.user_id, connection.connection_id)
        connection.rooms.discard(room_id)
        left = self._broadcaster.unregister(room_id, connection_id)
        if left:
            logger.info("[Registry] %s left room %s", connection.describe(), room_id)
        return left

    def revoke(self, room_id: str, user_id: str) -> int:
        """Unregister every connection of ``user_id`` from ``room_id``.

        Used after the user is removed from the room. Each affected connection
        is told with an ``error`` event (reason ``removed``).
        """
        revoked = 0
        for connection in self._broadcaster.members(room_id):
            if connection.user_id != user_id:
                continue
            self.leave(connection.connection_id, room_id)
            self.send(connection, {"type": "error", "reason": "removed", "roomId": room_id})
            revoked += 1
        if revoked:
            logger.info("[Registry] Revoked %d connection(s) of user %s from room %s", revoked, user_id, room_id)
        return revoked

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    def _detach(self, connection: Connection) -> None:
        """Remove all in-memory traces of a connection. Never awaits."""
        self._typing.clear_connection(connection)
        for room_id in list(connection.rooms):
            self._broadcaster.unregister(room_id, connection.connection_id)
        connection.rooms.clear()
        connection.closed = True
        task = connection.sender_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _drop(self, connection: Connection, reason: str) -> None:
        """Disconnect from synchronous code (e.g. mid-broadcast)."""
        if self._connections.pop(connection.connection_id, None) is None:
            return
        logger.warning("[Registry] Dropping %s: %s", connection.describe(), reason)
        self._detach(connection)
        task = asyncio.get_running_loop().create_task(
            self._close_socket(connection, CLOSE_POLICY, reason)
        )
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    async def disconnect(self, connection_id: str, reason: str = "client-closed", code: int = CLOSE_NORMAL) -> bool:
        """Remove a connection from every room and close its socket.

        Returns:
            False if the connection was already gone.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        self._detach(connection)
        await self._close_socket(connection, code, reason)
        logger.info(
            "[Registry] Disconnected %s (%s). %d connections live",
            connection.describe(), reason, len(self._connections),
        )
        return True

    @staticmethod
    async def _close_socket(connection: Connection, code: int, reason: str) -> None:
        websocket = connection.websocket
        if (
            websocket.application_state == WebSocketState.DISCONNECTED
            or websocket.client_state == WebSocketState.DISCONNECTED
        ):
            return
        try:
            await websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            logger.debug("[Registry] Close of %s ignored: %s", connection.describe(), e)

    # -----------------------------------------------------------------------
    # Sender task
    # -----------------------------------------------------------------------

    async def _drain(self, connection: Connection) -> None:
        """Write queued events to the socket one at a time."""
        while True:
            event = await connection.outbox.get()
            try:
                await asyncio.wait_for(connection.websocket.send_json(event), timeout=self._send_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "[Registry] Send to %s timed out after %.1fs", connection.describe(), self._send_timeout
                )
                await self.disconnect(connection.connection_id, reason="send-timeout", code=CLOSE_POLICY)
                return
            except (RuntimeError, OSError, WebSocketDisconnect) as e:
                logger.info("[Registry] Send to %s failed: %s", connection.describe(), e)
                await self.disconnect(connection.connection_id, reason="send-failed")
                return
