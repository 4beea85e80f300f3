from fastapi import APIRouter, HTTPException, Request

from backend import BackendUnavailableError
from logging_config import get_logger
from schemas.rooms import DeleteRoomResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/")
async def list_rooms(request: Request):
    """Lobby view of every registered room: id, host, players, gameStarted, created."""
    engine = request.app.state.engine
    try:
        return await engine.registry.list_rooms_safe()
    except BackendUnavailableError as e:
        logger.error(f"Error listing rooms: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Room store unavailable")


@rooms_router.get("/{room_id}/state")
async def get_room_state(room_id: str, request: Request):
    # Same answer a joining client gets: the latest snapshot, or {} when none is stored
    engine = request.app.state.engine
    state = await engine.load_state(room_id)
    return state if state is not None else {}


@rooms_router.delete("/{room_id}", response_model=DeleteRoomResponse)
async def delete_room(room_id: str, request: Request):
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Delete room request for {room_id} from {client_host}")

    engine = request.app.state.engine
    try:
        removed = await engine.remove_room(room_id)
    except BackendUnavailableError as e:
        logger.error(f"Error deleting room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Room store unavailable")

    if not removed:
        logger.warning(f"Delete room failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return DeleteRoomResponse(room_id=room_id, deleted=True)
