"""Live connection record.

A ``Connection`` exists from a successful handshake until disconnect and is
never persisted. Outbound events are never written to the socket directly by
broadcasters: they are put on the connection's bounded queue and a single
sender task owned by ``ConnectionRegistry`` drains it, so a slow socket only
ever delays itself.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

DEFAULT_QUEUE_SIZE = 256


@dataclass(eq=False)
class Connection:
    """One authenticated websocket.

    Attributes:
        websocket: The underlying socket.
        user_id: Verified account id.
        username: Verified username.
        connection_id: Server-assigned id.
        rooms: Rooms this connection is currently registered in.
    """
    websocket: WebSocket
    user_id: str
    username: str
    queue_size: int = DEFAULT_QUEUE_SIZE
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    rooms: Set[str] = field(default_factory=set)
    closed: bool = False
    sender_task: Optional["asyncio.Task[None]"] = None
    outbox: "asyncio.Queue[Dict[str, Any]]" = field(init=False)

    def __post_init__(self) -> None:
        self.outbox = asyncio.Queue(maxsize=self.queue_size)

    def enqueue(self, event: Dict[str, Any]) -> bool:
        """Queue an event for delivery without waiting.

        Returns:
            False if the connection is closed or its queue is full.
        """
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def describe(self) -> str:
        return f"{self.connection_id[:8]} ({self.username})"
