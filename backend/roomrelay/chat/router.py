"""Chat router providing the WebSocket endpoint and read-only HTTP views.

This module provides:
    - WebSocket /ws: Real-time room chat
    - GET /rooms: Rooms with history or live members
    - GET /rooms/{room_id}/history: Stored history of one room

Protocol Flow:
    1. Client connects → Server sends: {type: "connected", connectionId}
    2. Client sends: {type: "joinRoom", room, username?}
       → Server sends to this client only: {type: "loadMessages", room, messages}
    3. Client sends: {type: "message", room?, username?, msg}
       → Server broadcasts to the room: {type: "message", room, username, msg}
    4. Malformed events, invalid JSON or binary frames
       → Server sends: {type: "error", error}
    5. On disconnect the connection leaves its room; history is kept.
"""
import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .broadcast import BroadcastEngine
from .registry import RoomRegistry
from .session import ConnectionSession
from .store import MessageStore
from roomrelay.config import get_config

logger = logging.getLogger(__name__)

router = APIRouter()

# Maximum number of messages returned by the history endpoint
MAX_HISTORY_LIMIT = 500

_engine: Optional[BroadcastEngine] = None


def build_engine() -> BroadcastEngine:
    """Create the store, registry and engine from the active configuration."""
    config = get_config()
    store = MessageStore.get_instance(config.store.path)
    registry = RoomRegistry(rejoin_leaves_previous=config.chat.rejoin_leaves_previous)
    return BroadcastEngine(store, registry, echo_to_sender=config.chat.echo_to_sender)


def get_engine() -> BroadcastEngine:
    """Return the process-wide engine, building it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: Optional[BroadcastEngine]) -> None:
    global _engine
    _engine = engine


@router.get("/rooms")
async def list_rooms() -> JSONResponse:
    """List every room that has history or live members.

    Example:
        GET /rooms
        → {"rooms": [{"room": "lobby", "messages": 3, "members": 2}]}
    """
    engine = get_engine()
    room_ids = sorted(set(engine.store.rooms()) | set(engine.registry.rooms()))
    return JSONResponse({
        "rooms": [
            {
                "room": room_id,
                "messages": engine.store.message_count(room_id),
                "members": engine.registry.room_size(room_id),
            }
            for room_id in room_ids
        ]
    })


@router.get("/rooms/{room_id}/history")
async def get_room_history(
    room_id: str,
    limit: Optional[int] = Query(
        None, ge=1, le=MAX_HISTORY_LIMIT, description="Return only the last N messages"
    ),
) -> JSONResponse:
    """Get the stored history of a room, oldest first.

    Example:
        GET /rooms/lobby/history
        GET /rooms/lobby/history?limit=20
    """
    messages = get_engine().store.history(room_id)
    if limit is not None:
        messages = messages[-limit:]
    return JSONResponse({
        "room": room_id,
        "messages": [msg.model_dump() for msg in messages],
    })


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for real-time room chat.

    One connection drives one ConnectionSession until the client goes away.
    """
    engine = get_engine()
    await websocket.accept()

    connection_id = str(uuid.uuid4())
    session = ConnectionSession(connection_id, websocket, engine)
    await session.open()

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000), frame.get("reason"))

            text = frame.get("text")
            if text is None:
                logger.warning(f"[WS] Binary frame from {connection_id}")
                await websocket.send_json({"type": "error", "error": "Expected a text frame"})
                continue
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"[WS] Invalid JSON from {connection_id}")
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue
            await session.dispatch(data)
    except WebSocketDisconnect:
        logger.info(f"[WS] Connection closed: {connection_id}")
    finally:
        session.on_disconnect()
