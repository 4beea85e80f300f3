import json
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis
import redis.asyncio as aioredis
from pydantic import ValidationError

from constants import STATE_TTL_SECONDS
from logging_config import get_logger
from redis_keys import REDIS_ROOMS_KEY, REDIS_STATE_KEY
from schemas.rooms import Room

logger = get_logger(__name__)


class BackendUnavailableError(Exception):
    """The backing store could not be reached or refused the operation."""


class StateBackend(Protocol):
    """Storage for the room registry and the latest snapshot per room.

    Implementations:
    - MemoryBackend: per-process dicts, used when no Redis is configured
    - RedisBackend: shared across server processes, snapshots expire
    """

    async def get_rooms(self) -> Dict[str, Room]:
        ...

    async def save_rooms(self, rooms: Dict[str, Room]) -> None:
        ...

    async def get_last_state(self, room_id: str) -> Optional[Any]:
        ...

    async def set_last_state(self, room_id: str, state: Any) -> None:
        ...

    async def delete_last_state(self, room_id: str) -> None:
        ...

    async def close(self) -> None:
        ...


def dump_rooms(rooms: Dict[str, Room]) -> str:
    return json.dumps({room_id: room.model_dump(by_alias=True) for room_id, room in rooms.items()})


def load_rooms(raw: Optional[str]) -> Dict[str, Room]:
    """Parse a stored registry document, skipping anything that does not parse."""
    if not raw:
        return {}
    try:
        document = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Stored room registry is not valid JSON, treating as empty: {e}")
        return {}
    if not isinstance(document, dict):
        logger.warning(f"Stored room registry is a {type(document).__name__}, treating as empty")
        return {}

    rooms = {}
    for room_id, data in document.items():
        try:
            rooms[room_id] = Room.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Skipping corrupt stored room {room_id}: {e.error_count()} errors")
    return rooms


def load_state(room_id: str, raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Stored snapshot for room {room_id} is corrupt, treating as absent: {e}")
        return None


class MemoryBackend:
    """In-process backend. Values are kept serialized so callers never share objects with the store."""

    def __init__(self, state_ttl: Optional[int] = STATE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.state_ttl = state_ttl
        self.clock = clock
        self._rooms_raw: Optional[str] = None
        # Format: {room_id: (snapshot_json, expires_at_monotonic or None)}
        self._states: Dict[str, Tuple[str, Optional[float]]] = {}
        logger.info(f"Initializing MemoryBackend with snapshot TTL {state_ttl} seconds")

    async def get_rooms(self) -> Dict[str, Room]:
        return load_rooms(self._rooms_raw)

    async def save_rooms(self, rooms: Dict[str, Room]) -> None:
        self._rooms_raw = dump_rooms(rooms)
        logger.debug(f"Saved registry with {len(rooms)} rooms")

    async def get_last_state(self, room_id: str) -> Optional[Any]:
        entry = self._states.get(room_id)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            logger.debug(f"Snapshot for room {room_id} expired")
            del self._states[room_id]
            return None
        return load_state(room_id, raw)

    async def set_last_state(self, room_id: str, state: Any) -> None:
        expires_at = self.clock() + self.state_ttl if self.state_ttl else None
        self._states[room_id] = (json.dumps(state), expires_at)

    async def delete_last_state(self, room_id: str) -> None:
        self._states.pop(room_id, None)

    async def close(self) -> None:
        self._states.clear()


class RedisBackend:
    def __init__(self, redis_client: aioredis.Redis, state_ttl: Optional[int] = STATE_TTL_SECONDS):
        self.redis_client = redis_client
        self.state_ttl = state_ttl
        logger.info(f"Initializing RedisBackend with snapshot TTL {state_ttl} seconds")

    async def get_rooms(self) -> Dict[str, Room]:
        try:
            raw = await self.redis_client.get(REDIS_ROOMS_KEY)
        except redis.RedisError as e:
            raise BackendUnavailableError(f"Failed to read room registry: {e}") from e
        return load_rooms(raw)

    async def save_rooms(self, rooms: Dict[str, Room]) -> None:
        try:
            # SET replaces the whole document, there is no per-room merge
            await self.redis_client.set(REDIS_ROOMS_KEY, dump_rooms(rooms))
        except redis.RedisError as e:
            raise BackendUnavailableError(f"Failed to save room registry: {e}") from e
        logger.debug(f"Saved registry with {len(rooms)} rooms to {REDIS_ROOMS_KEY}")

    async def get_last_state(self, room_id: str) -> Optional[Any]:
        key = REDIS_STATE_KEY.format(slug=room_id)
        try:
            raw = await self.redis_client.get(key)
        except redis.RedisError as e:
            raise BackendUnavailableError(f"Failed to read snapshot for room {room_id}: {e}") from e
        return load_state(room_id, raw)

    async def set_last_state(self, room_id: str, state: Any) -> None:
        key = REDIS_STATE_KEY.format(slug=room_id)
        try:
            await self.redis_client.set(key, json.dumps(state), ex=self.state_ttl or None)
        except redis.RedisError as e:
            raise BackendUnavailableError(f"Failed to write snapshot for room {room_id}: {e}") from e
        logger.debug(f"Stored snapshot for room {room_id} with TTL {self.state_ttl}")

    async def delete_last_state(self, room_id: str) -> None:
        try:
            await self.redis_client.delete(REDIS_STATE_KEY.format(slug=room_id))
        except redis.RedisError as e:
            raise BackendUnavailableError(f"Failed to delete snapshot for room {room_id}: {e}") from e

    async def close(self) -> None:
        await self.redis_client.aclose()
