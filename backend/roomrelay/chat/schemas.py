"""Pydantic schemas for chat messages and inbound WebSocket events."""
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A single chat message as stored in room history and sent to clients.

    This is also the on-disk record shape: ``{"username": ..., "msg": ...}``.
    Messages are immutable once created.

    Attributes:
        username: Sender identity (may be empty for anonymous senders).
        msg: Message body. Any string, including empty, is accepted.
    """
    model_config = ConfigDict(frozen=True)

    username: str = Field(default="", description="Sender identity, may be empty")
    msg: str = Field(..., description="Message body")


class JoinRoomEvent(BaseModel):
    """Client request to join a room.

    Example:
        {"type": "joinRoom", "room": "lobby", "username": "ana"}
    """
    type: Literal["joinRoom"] = "joinRoom"
    room: str = Field(..., min_length=1, description="Room to join")
    username: Optional[str] = Field(default=None, description="Display name")


class SendMessageEvent(BaseModel):
    """Client request to post a message.

    ``room`` and ``username`` fall back to the session's joined room and
    display name when omitted.

    Example:
        {"type": "message", "room": "lobby", "username": "ana", "msg": "hi"}
    """
    type: Literal["message"] = "message"
    room: Optional[str] = Field(default=None, min_length=1, description="Target room")
    username: Optional[str] = Field(default=None, description="Sender identity")
    msg: str = Field(..., description="Message body")
