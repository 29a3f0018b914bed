"""Realtime websocket endpoint.

Protocol:
    Handshake:
        The client passes its bearer credential as the ``token`` query
        parameter, an ``Authorization: Bearer`` header or the ``token``
        cookie. On failure the server sends ``{type: "error", reason}`` and
        closes with code 4401 and the same reason; no connection state is
        created. On success it sends
        ``{type: "connected", connectionId, userId, username}``.

    Client -> server:
        - joinRoom    {roomId}
        - leaveRoom   {roomId}
        - sendTyping  {roomId, isTyping}
        - sendMessage {roomId, content, clientId}

    Server -> client:
        - roomJoined  {roomId, room}
        - roomLeft    {roomId}
        - newMessage  {message, clientId?}
        - userTyping  {roomId, userId, username, isTyping}
        - error       {reason, error, roomId?, clientId?, status?}
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ..auth.dependencies import extract_credential
from ..errors import AuthError, ChatError
from .connection import Connection
from .registry import CLOSE_AUTH_FAILED

logger = logging.getLogger(__name__)

router = APIRouter()


def _error_event(exc: ChatError, **context: Any) -> Dict[str, Any]:
    event = {"type": "error", "reason": exc.reason, "error": exc.message}
    event.update({k: v for k, v in context.items() if v is not None})
    return event


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer credential"),
) -> None:
    """Authenticate, admit, then dispatch client events until disconnect."""
    services = websocket.app.state.services
    registry = services.registry

    credential = token or extract_credential(
        websocket.headers, websocket.cookies, services.config.auth.cookie_name
    )
    try:
        identity = registry.authenticate(credential)
    except AuthError as e:
        logger.info("[WS] Handshake rejected: %s", e.reason)
        await websocket.accept()
        await websocket.send_json({"type": "error", "reason": e.reason, "error": e.message})
        await websocket.close(code=CLOSE_AUTH_FAILED, reason=e.reason)
        return

    await websocket.accept()
    connection = registry.admit(websocket, identity)
    registry.send(connection, {
        "type": "connected",
        "connectionId": connection.connection_id,
        "userId": identity.userId,
        "username": identity.username,
    })

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (ValueError, KeyError, TypeError):
                # Undecodable text or a binary frame
                registry.send(connection, {"type": "error", "reason": "invalid-payload", "error": "Expected a JSON object"})
                continue
            if not isinstance(data, dict):
                registry.send(connection, {"type": "error", "reason": "invalid-payload", "error": "Expected a JSON object"})
                continue
            logger.debug("[WS] %s received: type=%s", connection.describe(), data.get("type", "?"))
            _dispatch(services, connection, data)

    except WebSocketDisconnect:
        logger.info("[WS] %s closed by client", connection.describe())
    finally:
        await registry.disconnect(connection.connection_id, reason="client-closed")


def _dispatch(services, connection: Connection, data: Dict[str, Any]) -> None:
    registry = services.registry
    event_type = data.get("type")
    room_id = data.get("roomId")

    if event_type not in ("joinRoom", "leaveRoom", "sendTyping", "sendMessage"):
        registry.send(connection, {
            "type": "error",
            "reason": "unknown-event",
            "error": f"Unknown event type: {event_type!r}",
        })
        return

    if not isinstance(room_id, str) or not room_id:
        registry.send(connection, {
            "type": "error",
            "reason": "validation-error",
            "error": "roomId is required",
            "clientId": data.get("clientId"),
        })
        return

    # --- joinRoom ---
    if event_type == "joinRoom":
        try:
            room = registry.join(connection.connection_id, room_id)
        except ChatError as e:
            registry.send(connection, _error_event(e, roomId=room_id))
            return
        registry.send(connection, {
            "type": "roomJoined",
            "roomId": room_id,
            "room": room.model_dump(mode="json"),
        })
        return

    # --- leaveRoom ---
    if event_type == "leaveRoom":
        registry.leave(connection.connection_id, room_id)
        registry.send(connection, {"type": "roomLeft", "roomId": room_id})
        return

    # --- sendTyping ---
    if event_type == "sendTyping":
        if room_id not in connection.rooms:
            registry.send(connection, {
                "type": "error",
                "reason": "not-a-member",
                "error": "Join the room before sending typing indicators",
                "roomId": room_id,
            })
            return
        services.typing.set_typing(connection, room_id, bool(data.get("isTyping", True)))
        return

    # --- sendMessage ---
    client_id = data.get("clientId")
    try:
        services.pipeline.send(connection, room_id, data.get("content") or "", client_id)
    except ChatError as e:
        logger.info("[WS] Send from %s to room %s failed: %s", connection.describe(), room_id, e.reason)
        registry.send(connection, _error_event(e, roomId=room_id, clientId=client_id, status="failed"))
