from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional


class Envelope(BaseModel):
    """A WebSocket frame: `{"event": "<name>", "data": <payload>}`."""

    event: str
    data: Any = None


class JoinRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(None, alias="roomId")
    player_id: Optional[str] = Field(None, alias="playerId")
    name: Optional[str] = None


class LeaveRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(None, alias="roomId")


class StateUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(None, alias="roomId")
    state: Any = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(None, alias="roomId")
    # Left untyped: the engine drops a non-string message and defaults a non-string type
    type: Any = None
    message: Any = None


class ChatPayload(BaseModel):
    type: str
    message: str
    timestamp: int
