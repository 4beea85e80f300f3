import asyncio
from typing import Any, Dict, Optional

from pydantic import ValidationError

from backend import StateBackend
from constants import MAX_PLAYERS
from logging_config import get_logger
from schemas.rooms import Player, PublicRoomView, Room

logger = get_logger(__name__)


class RoomRegistry:
    """Lobby metadata for every room, kept apart from the per-room game snapshot."""

    def __init__(self, backend: StateBackend, max_players: int = MAX_PLAYERS):
        self.backend = backend
        self.max_players = max_players
        self._lock = asyncio.Lock()

    async def list_rooms_safe(self) -> Dict[str, Dict[str, Any]]:
        rooms = await self.backend.get_rooms()
        return {
            room_id: PublicRoomView.from_room(room).model_dump(by_alias=True)
            for room_id, room in rooms.items()
        }

    def parse_document(self, document: Any) -> Optional[Dict[str, Room]]:
        """Validate a client-pushed registry. Returns None if any part of it is unusable."""
        if not isinstance(document, dict):
            logger.debug(f"Rejecting registry push: expected an object, got {type(document).__name__}")
            return None

        rooms = {}
        for room_id, data in document.items():
            try:
                room = Room.model_validate(data)
            except ValidationError as e:
                logger.debug(f"Rejecting registry push: room {room_id} is invalid: {e.error_count()} errors")
                return None
            if len(room.players) > self.max_players:
                logger.debug(f"Rejecting registry push: room {room_id} has {len(room.players)} players (max {self.max_players})")
                return None
            if room.id is None:
                room.id = room_id
            rooms[room_id] = room
        return rooms

    async def save_rooms(self, document: Any) -> bool:
        """Replace the whole registry with a pushed document. Returns True if it was stored."""
        rooms = self.parse_document(document)
        if rooms is None:
            return False
        async with self._lock:
            await self.backend.save_rooms(rooms)
        logger.info(f"Room registry replaced with {len(rooms)} rooms")
        return True

    async def seat_player(self, room_id: str, player_id: str, name: Optional[str] = None) -> bool:
        """Seat a player in join order, creating the room with them as host if it is unknown.

        Returns True if the registry changed. Seated players and full rooms are left alone.
        """
        async with self._lock:
            rooms = await self.backend.get_rooms()
            room = rooms.get(room_id)
            if room is None:
                room = Room(id=room_id, host=player_id)
                rooms[room_id] = room
                logger.info(f"Room {room_id} created by {player_id}")
            elif room.has_player(player_id):
                return False
            elif len(room.players) >= self.max_players:
                logger.info(f"Room {room_id} is full ({len(room.players)}/{self.max_players}), {player_id} not seated")
                return False

            seat = room.next_seat()
            room.players.append(Player(id=player_id, name=name or player_id, index=seat))
            await self.backend.save_rooms(rooms)
        logger.info(f"Player {player_id} seated at index {seat} in room {room_id}")
        return True

    async def remove_room(self, room_id: str) -> bool:
        async with self._lock:
            rooms = await self.backend.get_rooms()
            if rooms.pop(room_id, None) is None:
                return False
            await self.backend.save_rooms(rooms)
        logger.info(f"Room {room_id} removed from registry")
        return True
