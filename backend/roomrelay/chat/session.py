"""Per-connection driver binding a live transport connection to the core.

Inbound events and their effects:
    - open:        register an unjoined session, send {type: "connected"}
    - joinRoom:    Registry.join, then history replay to this connection only
                   as {type: "loadMessages", room, messages}
    - message:     BroadcastEngine.handle_message
    - disconnect:  Registry.disconnect (history is retained)

Malformed events are answered with {type: "error", error} on this connection
only and never close it.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .broadcast import BroadcastEngine
from .schemas import JoinRoomEvent, Message, SendMessageEvent

logger = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """An inbound event could not be interpreted."""


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class ConnectionSession:
    """Drives join/send/disconnect events for one connection.

    Args:
        connection_id: Transport-assigned unique id.
        channel: Outbound channel with ``async send_json(dict)``.
        engine: Broadcast engine (gives access to the store and registry).
    """

    def __init__(self, connection_id: str, channel: Any, engine: BroadcastEngine) -> None:
        self.connection_id = connection_id
        self.channel = channel
        self.engine = engine

    @property
    def registry(self):
        return self.engine.registry

    @property
    def store(self):
        return self.engine.store

    @property
    def room_id(self) -> Optional[str]:
        session = self.registry.session(self.connection_id)
        return session.room_id if session else None

    @property
    def display_name(self) -> Optional[str]:
        session = self.registry.session(self.connection_id)
        return session.display_name if session else None

    async def open(self) -> None:
        """Allocate the session and tell the client its connection id."""
        self.registry.connect(self.connection_id, self.channel)
        logger.info(f"[Session] Connected: {self.connection_id}")
        await self.channel.send_json({
            "type": "connected",
            "connectionId": self.connection_id,
        })

    async def on_join(self, room_id: str, display_name: Optional[str] = None) -> List[Message]:
        """Join *room_id* and replay its history to this connection only.

        Returns:
            The history that was sent.
        """
        if self.registry.session(self.connection_id) is None:
            self.registry.connect(self.connection_id, self.channel)

        self.registry.join(self.connection_id, room_id, display_name)
        logger.info(f"[Session] {display_name or self.connection_id} joined room: {room_id}")

        history = self.store.history(room_id)
        await self.channel.send_json({
            "type": "loadMessages",
            "room": room_id,
            "messages": [message.model_dump() for message in history],
        })
        return history

    async def on_message(
        self,
        body: str,
        room_id: Optional[str] = None,
        sender_identity: Optional[str] = None,
    ) -> Message:
        """Post *body* to *room_id* (default: the joined room).

        Raises:
            MalformedEventError: If no room is given and none is joined.
        """
        target = room_id or self.room_id
        if target is None:
            raise MalformedEventError("room is required when not joined to a room")

        sender = sender_identity if sender_identity is not None else (self.display_name or "")
        return await self.engine.handle_message(
            target, sender, body, sender_id=self.connection_id
        )

    def on_disconnect(self) -> None:
        """Drop membership and the session record."""
        session = self.registry.disconnect(self.connection_id)
        name = session.display_name if session and session.display_name else self.connection_id
        logger.info(f"[Session] {name} left the chat")

    async def dispatch(self, data: Any) -> None:
        """Route one inbound event; reject malformed ones with an error frame."""
        try:
            await self._dispatch(data)
        except MalformedEventError as exc:
            logger.warning(f"[Session] Rejected event from {self.connection_id}: {exc}")
            await self.channel.send_json({"type": "error", "error": str(exc)})

    async def _dispatch(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise MalformedEventError("event must be a JSON object")

        event_type = data.get("type")
        logger.debug("[Session] %s received: type=%s", self.connection_id, event_type)

        if event_type == "joinRoom":
            event = self._parse(JoinRoomEvent, data)
            await self.on_join(event.room, event.username)
            return

        if event_type == "message":
            event = self._parse(SendMessageEvent, data)
            await self.on_message(event.msg, event.room, event.username)
            return

        raise MalformedEventError(f"unknown event type: {event_type!r}")

    @staticmethod
    def _parse(model, data: Dict[str, Any]):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise MalformedEventError(f"invalid {data.get('type')} event: {_describe(exc)}") from exc
