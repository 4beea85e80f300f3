import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from fanout import FanoutEngine
from logging_config import get_logger
from schemas.events import ChatRequest, Envelope, JoinRoomRequest, LeaveRoomRequest, StateUpdateRequest
from session import Session

logger = get_logger(__name__)

realtime_router = APIRouter(tags=["realtime"])


async def on_get_rooms(engine: FanoutEngine, session: Session, data):
    await engine.get_rooms(session)


async def on_save_rooms(engine: FanoutEngine, session: Session, data):
    await engine.save_rooms(session, data)


async def on_join_room(engine: FanoutEngine, session: Session, data):
    request = JoinRoomRequest.model_validate(data or {})
    await engine.join(session, request.room_id, request.player_id, request.name)


async def on_leave_room(engine: FanoutEngine, session: Session, data):
    request = LeaveRoomRequest.model_validate(data or {})
    await engine.leave(session, request.room_id)


async def on_state_update(engine: FanoutEngine, session: Session, data):
    request = StateUpdateRequest.model_validate(data or {})
    await engine.update_state(session, request.room_id, request.state)


async def on_chat(engine: FanoutEngine, session: Session, data):
    request = ChatRequest.model_validate(data or {})
    await engine.chat(session, request.room_id, request.type, request.message)


EVENT_HANDLERS = {
    "getRooms": on_get_rooms,
    "saveRooms": on_save_rooms,
    "joinRoom": on_join_room,
    "leaveRoom": on_leave_room,
    "stateUpdate": on_state_update,
    "chat": on_chat,
}


async def dispatch_event(engine: FanoutEngine, session: Session, raw: str) -> None:
    """Route one inbound frame. Malformed frames are dropped without telling the sender."""
    try:
        envelope = Envelope.model_validate(json.loads(raw))
    except (ValueError, RecursionError, ValidationError) as e:
        logger.debug(f"Dropping malformed frame from connection {session.connection_id}: {e}")
        return

    handler = EVENT_HANDLERS.get(envelope.event)
    if handler is None:
        logger.debug(f"Ignoring unknown event {envelope.event!r} from connection {session.connection_id}")
        return

    try:
        await handler(engine, session, envelope.data)
    except (ValidationError, RecursionError) as e:
        logger.debug(f"Dropping malformed {envelope.event} from connection {session.connection_id}: {e}")


@realtime_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Realtime channel. Frames in both directions are `{"event": ..., "data": ...}` JSON text."""
    engine: FanoutEngine = websocket.app.state.engine
    await websocket.accept()
    session = Session(websocket)
    logger.info(f"WebSocket connection accepted: {session.connection_id}")

    try:
        await engine.connect(session)
        message_count = 0
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            data = message.get("text")
            message_count += 1
            if data is None:
                logger.debug(f"Ignoring binary frame #{message_count} from connection {session.connection_id}")
                continue
            logger.debug(f"Received message #{message_count} from connection {session.connection_id}")
            await dispatch_event(engine, session, data)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {session.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {session.connection_id}: {e}", exc_info=True)
    finally:
        await engine.disconnect(session)
