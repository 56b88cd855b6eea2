"""Durable per-room message history.

The store keeps the authoritative room -> messages mapping in memory and
mirrors it to a single JSON snapshot file::

    {
      "lobby": [
        {"username": "ana", "msg": "hi"},
        {"username": "", "msg": "anonymous hello"}
      ]
    }

The whole file is rewritten after every accepted message, so ``append`` costs
O(total history bytes). That is fine for a small relay; there is no eviction
or compaction.

Older snapshots stored bare strings instead of objects. Those records are
read as anonymous messages and written back in object form on the next flush.

Thread Safety:
    A ``threading.Lock`` serialises every read-modify-write of the mapping and
    the file, so only one writer touches the snapshot at a time. Under the
    single asyncio event loop the lock is never contended.
"""
import contextlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from .schemas import Message

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = "messages.json"


class StoreError(Exception):
    """Base class for message store failures."""


class StoreLoadError(StoreError):
    """The snapshot file exists but does not hold a valid room mapping."""


class StoreWriteError(StoreError):
    """The snapshot file could not be rewritten."""


def _parse_record(room_id: str, record: object) -> Message:
    if isinstance(record, str):
        return Message(username="", msg=record)
    if isinstance(record, dict):
        username = record.get("username", "")
        msg = record.get("msg")
        if username is None:
            username = ""
        if isinstance(username, str) and isinstance(msg, str):
            return Message(username=username, msg=msg)
    raise StoreLoadError(f"Invalid message record in room {room_id!r}: {record!r}")


class MessageStore:
    """Owner of all room history and of the snapshot file.

    No other component reads or writes the file. Callers get history through
    ``history()`` and add to it through ``append()``.

    Attributes:
        _instance: Process-wide instance used by the WebSocket handlers.
        _path: Location of the JSON snapshot.
    """

    _instance: Optional["MessageStore"] = None

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self._path = Path(path or DEFAULT_STORE_PATH)
        self._lock = threading.Lock()
        self._rooms: Dict[str, List[Message]] = {}

    @classmethod
    def get_instance(cls, path: Optional[Union[str, Path]] = None) -> "MessageStore":
        """Get or create the singleton instance (loading it on creation).

        A *path* different from the current instance's replaces it with a
        store loaded from that path.
        """
        if cls._instance is not None and path is not None and Path(path) != cls._instance.path:
            logger.info(f"[Store] Switching snapshot from {cls._instance.path} to {path}")
            cls._instance = None
        if cls._instance is None:
            cls._instance = cls(path)
            cls._instance.load()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> Dict[str, List[Message]]:
        """Read the snapshot file into memory and return the mapping.

        A missing file is created empty. A malformed file is logged and
        replaced in memory by an empty mapping; the old history is lost once
        the next append rewrites the file.
        """
        with self._lock:
            if not self._path.exists():
                logger.info(f"[Store] No snapshot at {self._path}, creating an empty one")
                self._rooms = {}
                try:
                    self._write_snapshot()
                except StoreWriteError as exc:
                    logger.error(f"[Store] {exc}")
                return self.snapshot()

            try:
                self._rooms = self._read_snapshot()
            except StoreLoadError as exc:
                logger.error(f"[Store] Failed to load {self._path}, starting empty: {exc}")
                self._rooms = {}
                return self.snapshot()

            total = sum(len(msgs) for msgs in self._rooms.values())
            logger.info(
                f"[Store] Loaded {total} messages in {len(self._rooms)} rooms from {self._path}"
            )
            return self.snapshot()

    def _read_snapshot(self) -> Dict[str, List[Message]]:
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreLoadError(str(exc)) from exc

        if not isinstance(data, dict):
            raise StoreLoadError(
                f"Snapshot must be a JSON object, got {type(data).__name__}"
            )

        rooms: Dict[str, List[Message]] = {}
        for room_id, records in data.items():
            if not isinstance(records, list):
                raise StoreLoadError(f"History of room {room_id!r} is not a list")
            rooms[room_id] = [_parse_record(room_id, record) for record in records]
        return rooms

    def _write_snapshot(self) -> None:
        """Rewrite the whole snapshot file from the in-memory mapping.

        Writes to a sibling temp file and swaps it in, so readers never see
        a half-written snapshot. Non-ASCII text is written as JSON escapes,
        which keeps lone surrogates in message bodies round-trippable.

        Raises:
            StoreWriteError: If the file could not be written.
        """
        payload = {
            room_id: [message.model_dump() for message in messages]
            for room_id, messages in self._rooms.items()
        }
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except (OSError, ValueError) as exc:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StoreWriteError(f"Could not write snapshot {self._path}: {exc}") from exc

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def append(self, room_id: str, message: Message) -> Message:
        """Add *message* to the end of *room_id*'s history and flush to disk.

        The room is created if it has no history yet. If the flush fails the
        error is logged and the in-memory history stays authoritative; the
        next successful append rewrites the full snapshot.

        Returns:
            The same message (for chaining).
        """
        with self._lock:
            self._rooms.setdefault(room_id, []).append(message)
            try:
                self._write_snapshot()
            except StoreWriteError as exc:
                logger.error(f"[Store] {exc}; keeping message in memory only")
        return message

    def history(self, room_id: str) -> List[Message]:
        """Get a copy of the room's messages in insertion order (empty if none)."""
        return list(self._rooms.get(room_id, []))

    def message_count(self, room_id: str) -> int:
        """Get the number of messages in a room's history."""
        return len(self._rooms.get(room_id, []))

    def rooms(self) -> List[str]:
        """Get the ids of all rooms that have history."""
        return list(self._rooms.keys())

    def snapshot(self) -> Dict[str, List[Message]]:
        """Get a shallow copy of the full room -> messages mapping."""
        return {room_id: list(messages) for room_id, messages in self._rooms.items()}
