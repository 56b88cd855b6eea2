"""Single write path for chat messages: persist, then fan out.

Every chat message goes through ``BroadcastEngine.handle_message``:

    1. Build an immutable ``Message`` from the sender identity and body.
    2. Append it to the ``MessageStore`` (synchronous full-snapshot flush).
    3. Deliver ``{"type": "message", ...}`` to every connection joined to the
       room, optionally skipping the sender.

Delivery is fire-and-forget. Sends run concurrently with asyncio.gather();
a connection whose send fails is removed from its room. Order within a
room follows append order because each message is persisted before its
fan-out starts and the event loop handles one inbound event at a time.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from .registry import RoomRegistry
from .schemas import Message
from .store import MessageStore

logger = logging.getLogger(__name__)


def message_payload(room_id: str, message: Message) -> Dict[str, Any]:
    """Wire form of a broadcast chat message."""
    return {"type": "message", "room": room_id, **message.model_dump()}


class BroadcastEngine:
    """Persists chat messages and delivers them to room members.

    Args:
        store: Owner of room history.
        registry: Source of room membership and outbound channels.
        echo_to_sender: If True the sender receives its own message back.
    """

    def __init__(
        self,
        store: MessageStore,
        registry: RoomRegistry,
        echo_to_sender: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry
        self.echo_to_sender = echo_to_sender

    async def handle_message(
        self,
        room_id: str,
        sender_identity: str,
        body: str,
        sender_id: Optional[str] = None,
    ) -> Message:
        """Persist a message in *room_id* and deliver it to the room.

        No validation of emptiness or length is done on the body.

        Args:
            room_id: Target room (created implicitly if new).
            sender_identity: Display identity of the sender, may be empty.
            body: Message text.
            sender_id: Connection id of the sender, used to skip it when
                ``echo_to_sender`` is off.

        Returns:
            The stored Message.
        """
        message = Message(username=sender_identity or "", msg=body)
        self.store.append(room_id, message)

        exclude = None if self.echo_to_sender else sender_id
        delivered = await self.fan_out(room_id, message_payload(room_id, message), exclude)
        logger.info(f"[Broadcast] [{room_id}] {message.username}: delivered to {delivered}")
        return message

    async def fan_out(
        self,
        room_id: str,
        payload: Dict[str, Any],
        exclude: Optional[str] = None,
    ) -> int:
        """Send *payload* to every member of *room_id* except *exclude*.

        Returns:
            Number of connections that received the payload.
        """
        targets = [cid for cid in self.registry.members(room_id) if cid != exclude]
        if not targets:
            return 0

        results = await asyncio.gather(
            *[self.send_to(cid, payload) for cid in targets],
            return_exceptions=True
        )

        failed = [cid for cid, ok in zip(targets, results) if ok is not True]
        self._cleanup_connections(room_id, failed)
        return len(targets) - len(failed)

    async def send_to(self, connection_id: str, payload: Dict[str, Any]) -> bool:
        """Send a payload to one connection with error handling.

        Returns:
            True if successful, False if the connection is gone or failed.
        """
        channel = self.registry.channel(connection_id)
        if channel is None:
            return False
        try:
            await channel.send_json(payload)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {connection_id}: {e}")
            return False

    def _cleanup_connections(self, room_id: str, failed: List[str]) -> None:
        for connection_id in failed:
            self.registry.leave(connection_id)
            logger.debug(f"Removed dead connection {connection_id} from room {room_id}")
