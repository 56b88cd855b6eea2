"""Room membership tracking.

Each live connection has a ``Session`` record keyed by its connection id.
A session is either Unjoined (``room_id is None``) or Joined to one room::

    Unjoined --join--> Joined(room)
    Joined(room) --leave/disconnect--> Unjoined

Rooms are never created explicitly: a room exists for fan-out purposes as
long as at least one connection is joined to it.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Server-side state of one live connection.

    Attributes:
        connection_id: Transport-assigned unique id.
        channel: Outbound channel; anything with ``async send_json(dict)``.
        room_id: Room the connection is joined to, or None.
        display_name: Name given at join time, or None.
        extra_rooms: Rooms still listened to after a rejoin that did not
            leave the previous room.
    """
    connection_id: str
    channel: Any
    room_id: Optional[str] = None
    display_name: Optional[str] = None
    extra_rooms: Set[str] = field(default_factory=set)

    @property
    def joined(self) -> bool:
        return self.room_id is not None


class RoomRegistry:
    """Tracks which live connections belong to which room.

    Args:
        rejoin_leaves_previous: When True (default) joining a new room first
            removes the connection from the room it was in. When False the
            connection keeps listening to its earlier rooms as well.
    """

    def __init__(self, rejoin_leaves_previous: bool = True) -> None:
        self.rejoin_leaves_previous = rejoin_leaves_previous

        # connection_id -> Session
        self._sessions: Dict[str, Session] = {}

        # room_id -> set of joined connection ids
        self._members: Dict[str, Set[str]] = {}

    def connect(self, connection_id: str, channel: Any) -> Session:
        """Register a new, unjoined session for a live connection."""
        session = Session(connection_id=connection_id, channel=channel)
        self._sessions[connection_id] = session
        return session

    def join(
        self, connection_id: str, room_id: str, display_name: Optional[str] = None
    ) -> Optional[str]:
        """Associate a connection with *room_id*.

        Replaces any prior association. The room does not need to exist.

        Args:
            connection_id: Connection joining the room.
            room_id: Room to join.
            display_name: Optional display name for the session.

        Returns:
            The room the connection left as part of this join, if any.

        Raises:
            KeyError: If the connection was never registered with connect().
        """
        session = self._sessions[connection_id]
        previous = session.room_id
        left = None

        if previous is not None and previous != room_id:
            if self.rejoin_leaves_previous:
                self._discard(previous, connection_id)
                left = previous
            else:
                session.extra_rooms.add(previous)
        session.extra_rooms.discard(room_id)

        session.room_id = room_id
        session.display_name = display_name
        self._members.setdefault(room_id, set()).add(connection_id)

        if left:
            logger.info(f"[Registry] {connection_id} moved from room {left} to {room_id}")
        else:
            logger.info(f"[Registry] {connection_id} joined room {room_id}")
        return left

    def leave(self, connection_id: str) -> Optional[str]:
        """Remove the connection from whichever room it is in.

        No-op for unknown or unjoined connections.

        Returns:
            The room that was left, or None.
        """
        session = self._sessions.get(connection_id)
        if session is None or session.room_id is None:
            return None

        room_id = session.room_id
        for other in session.extra_rooms:
            self._discard(other, connection_id)
        self._discard(room_id, connection_id)

        session.room_id = None
        session.display_name = None
        session.extra_rooms.clear()
        logger.info(f"[Registry] {connection_id} left room {room_id}")
        return room_id

    def disconnect(self, connection_id: str) -> Optional[Session]:
        """Leave any room and drop the session entirely."""
        self.leave(connection_id)
        return self._sessions.pop(connection_id, None)

    def _discard(self, room_id: str, connection_id: str) -> None:
        members = self._members.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._members[room_id]

    def members(self, room_id: str) -> Set[str]:
        """Get a copy of the live connection ids joined to *room_id*."""
        return set(self._members.get(room_id, ()))

    def session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def channel(self, connection_id: str) -> Optional[Any]:
        """Get the outbound channel of a connection, if it is still live."""
        session = self._sessions.get(connection_id)
        return session.channel if session else None

    def room_size(self, room_id: str) -> int:
        """Get the number of connections joined to a room."""
        return len(self._members.get(room_id, ()))

    def rooms(self) -> List[str]:
        """Get the ids of rooms that currently have members."""
        return list(self._members.keys())

    def connection_count(self) -> int:
        return len(self._sessions)
