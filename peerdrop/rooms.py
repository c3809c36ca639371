from dataclasses import dataclass
from typing import Dict, List, Optional
import logging

from .exceptions import RoomFull, RoomNotFound
from .models import Room

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Departure:
    """A room removed because one of its members left"""

    room: Room
    survivor: Optional[str]


class RoomRegistry:
    """Two-party room state keyed by creator session id.

    Pure bookkeeping: no I/O and no locking.  The owner serialises access.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        # session_id -> room_id, for either member
        self._membership: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self.rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self.rooms

    def get(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def room_of(self, session_id: str) -> Optional[Room]:
        room_id = self._membership.get(session_id)
        if room_id is None:
            return None
        return self.rooms.get(room_id)

    def create(self, session_id: str) -> Room:
        """Create the room owned by *session_id*"""
        room = Room(creator_id=session_id)
        self.rooms[room.id] = room
        self._membership[session_id] = room.id
        logger.debug(f"Room {room.id} created")
        return room

    def ensure_joinable(self, session_id: str, room_id: str) -> Room:
        """Raise RoomNotFound or RoomFull if *session_id* cannot join *room_id*"""
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomNotFound()
        if room.is_full:
            raise RoomFull()
        if room.has_member(session_id):
            raise RoomFull("Already a member of this room")
        return room

    def join(self, session_id: str, room_id: str) -> Room:
        """Admit *session_id* as the joiner of *room_id*

        Raises RoomNotFound or RoomFull without touching any state.
        """
        room = self.ensure_joinable(session_id, room_id)
        room.joiner_id = session_id
        self._membership[session_id] = room.id
        logger.debug(f"Session {session_id} joined room {room.id}")
        return room

    def peer_of(self, session_id: str) -> Optional[str]:
        """The other member of *session_id*'s room, only once both are present"""
        room = self.room_of(session_id)
        if room is None or not room.is_full:
            return None
        return room.other_member(session_id)

    def depart(self, session_id: str) -> Optional[Departure]:
        """Delete the room *session_id* belongs to, if any"""
        room = self.room_of(session_id)
        if room is None:
            return None
        del self.rooms[room.id]
        self._membership.pop(room.creator_id, None)
        if room.joiner_id is not None:
            self._membership.pop(room.joiner_id, None)
        logger.debug(f"Room {room.id} removed after {session_id} left")
        return Departure(room=room, survivor=room.other_member(session_id))

    def snapshot(self) -> List[dict]:
        return [room.model_dump() for room in self.rooms.values()]
