from typing import Dict, Protocol
import asyncio
import logging

from pydantic import BaseModel

from .exceptions import RoomError
from .models import (
    Answer,
    ClientMessage,
    CreateRoom,
    IceCandidate,
    JoinedRoom,
    JoinError,
    JoinRoom,
    Offer,
    PeerDisconnected,
    PeerJoined,
    RoomCreated,
    SignalingMessage,
)
from .rooms import RoomRegistry

logger = logging.getLogger(__name__)


class SessionSocket(Protocol):
    async def accept(self) -> None: ...

    async def send_text(self, data: str) -> None: ...


class RendezvousServer:
    """Brokers two-party rooms and blindly relays negotiation messages.

    Every mutation, and the notifications it causes, happens under one lock
    so that room state and message order stay consistent per room.
    """

    def __init__(self):
        self.registry = RoomRegistry()
        # WebSocket connections - session_id -> socket
        self.active_connections: Dict[str, SessionSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: SessionSocket, session_id: str):
        """Accept WebSocket connection"""
        await websocket.accept()
        self.active_connections[session_id] = websocket
        logger.info(f"🔌 Session connected: {session_id}")
        logger.info(f"📊 Total connections: {len(self.active_connections)}")

    async def disconnect(self, session_id: str):
        """Forget a session and tear down the room it belonged to"""
        async with self._lock:
            self.active_connections.pop(session_id, None)
            await self._depart(session_id)
        logger.info(f"❌ Session disconnected: {session_id}")
        logger.info(f"📊 Total connections: {len(self.active_connections)}")

    async def handle_message(self, session_id: str, message: ClientMessage):
        """Apply one peer→relay message"""
        async with self._lock:
            match message:
                case CreateRoom():
                    await self._create_room(session_id)
                case JoinRoom(room_id=room_id):
                    await self._join_room(session_id, room_id)
                case Offer() | Answer() | IceCandidate():
                    await self._relay(session_id, message)

    async def _create_room(self, session_id: str):
        await self._depart(session_id)
        room = self.registry.create(session_id)
        logger.info(f"🏠 Room {room.id} created")
        await self.send_personal_message(session_id, RoomCreated(room_id=room.id))

    async def _join_room(self, session_id: str, room_id: str):
        try:
            self.registry.ensure_joinable(session_id, room_id)
        except RoomError as e:
            logger.info(f"🚫 {session_id} could not join room {room_id}: {e}")
            await self.send_personal_message(
                session_id, JoinError(code=e.error_code, reason=str(e))
            )
            return

        # A session belongs to at most one room
        await self._depart(session_id)
        room = self.registry.join(session_id, room_id)

        logger.info(f"🏠 Session {session_id} joined room {room.id}")
        await self.send_personal_message(session_id, JoinedRoom(room_id=room.id))
        await self.send_personal_message(room.creator_id, PeerJoined(peer_id=session_id))

    async def _relay(self, session_id: str, message: SignalingMessage):
        # Best effort: nothing to route to until the room has both members
        target = self.registry.peer_of(session_id)
        if target is None:
            logger.debug(f"Dropped {message.type} from {session_id}: no peer")
            return
        logger.info(f"🔄 Relaying {message.type}: {session_id} -> {target}")
        await self.send_personal_message(target, message)

    async def _depart(self, session_id: str):
        departure = self.registry.depart(session_id)
        if departure is None:
            return
        logger.info(f"🗑️ Removed room {departure.room.id}")
        if departure.survivor is not None:
            await self.send_personal_message(departure.survivor, PeerDisconnected())

    async def send_personal_message(self, session_id: str, message: BaseModel) -> bool:
        """Send message to specific session"""
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.warning(f"❌ Session {session_id} not found in active connections")
            return False
        try:
            await websocket.send_text(message.model_dump_json())
        except Exception as e:
            logger.error(f"❌ Error sending {message.type} to {session_id}: {e}")
            self.active_connections.pop(session_id, None)
            return False
        logger.debug(f"✅ Sent {message.type} to {session_id}")
        return True

    def get_debug_info(self) -> dict:
        """Get debug information"""
        return {
            "rooms": self.registry.snapshot(),
            "active_connections": list(self.active_connections.keys()),
            "total_connections": len(self.active_connections),
            "total_rooms": len(self.registry),
        }
