from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Optional
import uuid
import logging

from .config import Settings
from .models import RelayError, parse_client_message
from .websocket_manager import RendezvousServer

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

router = APIRouter()


def get_rendezvous(request: Request) -> RendezvousServer:
    return request.app.state.rendezvous


@router.get("/api/rooms")
async def list_rooms(request: Request):
    """List open rooms"""
    rendezvous = get_rendezvous(request)
    return {"rooms": rendezvous.registry.snapshot()}


@router.get("/api/rooms/{room_id}")
async def get_room(request: Request, room_id: str):
    """Get the membership of a specific room"""
    room = get_rendezvous(request).registry.get(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.model_dump()


@router.get("/api/ice-servers")
async def ice_servers(request: Request):
    """Negotiation-assist servers peers should use"""
    return {"ice_servers": request.app.state.settings.ice_servers}


@router.get("/api/debug")
async def debug_info(request: Request):
    """Get server debug information"""
    return get_rendezvous(request).get_debug_info()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for room control and signaling relay"""
    rendezvous: RendezvousServer = websocket.app.state.rendezvous
    session_id = str(uuid.uuid4())
    await rendezvous.connect(websocket, session_id)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = parse_client_message(data)
            except ValidationError as e:
                logger.warning(f"⚠️ Malformed message from {session_id}: {e.error_count()} error(s)")
                await rendezvous.send_personal_message(
                    session_id, RelayError(message="Malformed message")
                )
                continue

            logger.info(f"📨 Received {message.type} from {session_id}")
            await rendezvous.handle_message(session_id, message)

    except WebSocketDisconnect:
        logger.info(f"🔌 WebSocket disconnected: {session_id}")
    except Exception as e:
        logger.error(f"❌ WebSocket error for {session_id}: {e!r}")
    finally:
        await rendezvous.disconnect(session_id)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the relay application with its own room registry"""
    app = FastAPI(title="peerdrop relay", version="1.0.0")
    app.state.settings = settings or Settings.from_env()
    app.state.rendezvous = RendezvousServer()
    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("peerdrop.main:app", host="0.0.0.0", port=8000, reload=True)
