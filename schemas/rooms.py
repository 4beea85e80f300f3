import time
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional


def now_millis() -> int:
    return int(time.time() * 1000)


class Player(BaseModel):
    # Clients keep their own per-player fields here; they are stored but never projected
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    index: int


class Room(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    host: Optional[str] = None
    players: list[Player] = Field(default_factory=list)
    game_started: bool = Field(False, alias="gameStarted")
    created: int = Field(default_factory=now_millis)

    @model_validator(mode="after")
    def check_unique_seats(self):
        seats = [player.index for player in self.players]
        if len(seats) != len(set(seats)):
            raise ValueError(f"duplicate seat index in room {self.id}: {seats}")
        return self

    def has_player(self, player_id: str) -> bool:
        return any(player.id == player_id for player in self.players)

    def next_seat(self) -> int:
        return max((player.index for player in self.players), default=-1) + 1


class PublicPlayer(BaseModel):
    id: str
    name: Optional[str] = None
    index: int


class PublicRoomView(BaseModel):
    """Lobby projection of a room: never carries snapshot or client-private fields."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    host: Optional[str] = None
    players: list[PublicPlayer] = Field(default_factory=list)
    game_started: bool = Field(False, alias="gameStarted")
    created: int

    @classmethod
    def from_room(cls, room: Room) -> "PublicRoomView":
        return cls(
            id=room.id,
            host=room.host,
            players=[PublicPlayer(id=p.id, name=p.name, index=p.index) for p in room.players],
            game_started=room.game_started,
            created=room.created,
        )


class DeleteRoomResponse(BaseModel):
    room_id: str
    deleted: bool
