import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from backend import BackendUnavailableError, StateBackend
from bridge import TOPIC_CHAT, TOPIC_ROOMS, TOPIC_STATE, Bridge
from constants import DEFAULT_CHAT_TYPE, RESYNC_INTERVAL
from logging_config import get_logger
from registry import RoomRegistry
from schemas.events import ChatPayload
from schemas.rooms import now_millis
from session import Session

logger = get_logger(__name__)


class FanoutEngine:
    """Routes inbound events from sessions to the store, to room peers and to the broker bridge.

    Snapshots follow last-write-wins: whatever was written last for a room is
    what late joiners get. Within this process, a per-room lock keeps the
    store write and the broadcast of one update together, so every peer sees
    a room's updates in the order they were accepted.
    """

    def __init__(
        self,
        backend: StateBackend,
        registry: RoomRegistry,
        bridge: Bridge,
        resync_interval: float = RESYNC_INTERVAL,
    ):
        self.backend = backend
        self.registry = registry
        self.bridge = bridge
        self.resync_interval = resync_interval

        # Format: {connection_id: session}
        self.sessions: Dict[str, Session] = {}
        # Format: {room_id: {connection_id: session}}
        # Only this process's connections; the bridge covers the others.
        self.room_sessions: Dict[str, Dict[str, Session]] = {}

        # Per-room state below only lives while a room has local members or a call in flight
        self._room_locks: Dict[str, asyncio.Lock] = {}
        # Format: {room_id: number of calls holding or waiting on the room lock}
        self._lock_users: Dict[str, int] = {}
        # Latest snapshot seen per room, served when the backend is unavailable
        self._last_known: Dict[str, Any] = {}
        self._last_phase: Dict[str, Any] = {}

    @asynccontextmanager
    async def _room_guard(self, room_id: str):
        lock = self._room_locks.setdefault(room_id, asyncio.Lock())
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
                if room_id not in self.room_sessions:
                    self._forget_room(room_id)

    def _forget_room(self, room_id: str) -> None:
        self._room_locks.pop(room_id, None)
        self._last_known.pop(room_id, None)
        self._last_phase.pop(room_id, None)

    # Connection lifecycle

    async def connect(self, session: Session) -> None:
        self.sessions[session.connection_id] = session
        logger.info(f"Connection {session.connection_id} registered ({len(self.sessions)} connected)")
        await self.get_rooms(session)

    async def disconnect(self, session: Session) -> None:
        session.stop_resync()
        if session.room_id:
            self._remove_from_room(session, session.room_id)
        self.sessions.pop(session.connection_id, None)
        logger.info(f"Connection {session.connection_id} disconnected ({len(self.sessions)} connected)")

    # Room registry

    async def get_rooms(self, session: Session) -> None:
        try:
            rooms = await self.registry.list_rooms_safe()
        except BackendUnavailableError as e:
            logger.error(f"Could not list rooms for connection {session.connection_id}: {e}")
            return
        await session.send("roomsList", rooms)

    async def save_rooms(self, session: Session, document: Any) -> None:
        try:
            saved = await self.registry.save_rooms(document)
        except BackendUnavailableError as e:
            logger.error(f"Registry push from connection {session.connection_id} not stored: {e}")
            return
        if saved:
            logger.info(f"Registry replaced by connection {session.connection_id}")
            await self.broadcast_rooms_list()

    async def broadcast_rooms_list(self) -> None:
        try:
            rooms = await self.registry.list_rooms_safe()
        except BackendUnavailableError as e:
            logger.error(f"Could not broadcast room list: {e}")
            return
        await self._send_all(list(self.sessions.values()), "roomsList", rooms)
        await self.bridge.publish_rooms(rooms)

    async def remove_room(self, room_id: str) -> bool:
        removed = await self.registry.remove_room(room_id)
        if not removed:
            return False
        try:
            await self.backend.delete_last_state(room_id)
        except BackendUnavailableError as e:
            # The registry entry is already gone; an orphaned snapshot expires on its own
            logger.error(f"Room {room_id} removed but its snapshot was not deleted: {e}")
        self._last_known.pop(room_id, None)
        self._last_phase.pop(room_id, None)
        await self.broadcast_rooms_list()
        return True

    # Room membership

    async def join(
        self,
        session: Session,
        room_id: Optional[str],
        player_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        if not room_id:
            logger.debug(f"Ignoring joinRoom without roomId from connection {session.connection_id}")
            return

        if session.room_id and session.room_id != room_id:
            self._remove_from_room(session, session.room_id)

        if session.room_id != room_id:
            self.room_sessions.setdefault(room_id, {})[session.connection_id] = session
            session.room_id = room_id
            logger.info(f"Connection {session.connection_id} joined room {room_id} "
                        f"(local connections: {len(self.room_sessions[room_id])})")
        if player_id:
            session.player_id = player_id
            await self._seat_player(room_id, player_id, name)

        await self._send_snapshot(session, room_id)
        session.start_resync(self.resync_interval, self.resync)

    async def resync(self, session: Session) -> None:
        if session.room_id:
            await self._send_snapshot(session, session.room_id)

    async def leave(self, session: Session, room_id: Optional[str]) -> None:
        if not room_id:
            return
        self._remove_from_room(session, room_id)

    def _remove_from_room(self, session: Session, room_id: str) -> None:
        members = self.room_sessions.get(room_id)
        if members is not None:
            members.pop(session.connection_id, None)
            if not members:
                del self.room_sessions[room_id]
                if room_id not in self._lock_users:
                    self._forget_room(room_id)
                logger.debug(f"No more local connections in room {room_id}")
        if session.room_id == room_id:
            session.room_id = None
            session.stop_resync()
            logger.info(f"Connection {session.connection_id} left room {room_id}")

    async def _seat_player(self, room_id: str, player_id: str, name: Optional[str]) -> None:
        try:
            changed = await self.registry.seat_player(room_id, player_id, name)
        except BackendUnavailableError as e:
            logger.error(f"Could not seat player {player_id} in room {room_id}: {e}")
            return
        if changed:
            await self.broadcast_rooms_list()

    async def _send_snapshot(self, session: Session, room_id: str) -> None:
        async with self._room_guard(room_id):
            state = await self.load_state(room_id)
            # Joiners always get an answer, an empty document when nothing is stored yet
            await session.send("stateUpdate", state if state is not None else {})

    async def load_state(self, room_id: str) -> Optional[Any]:
        try:
            state = await self.backend.get_last_state(room_id)
        except BackendUnavailableError as e:
            logger.warning(f"Serving last known snapshot for room {room_id}: {e}")
            return self._last_known.get(room_id)
        if state is None:
            self._last_known.pop(room_id, None)
        else:
            self._last_known[room_id] = state
        return state

    # Fanout

    async def update_state(self, session: Session, room_id: Optional[str], state: Any) -> None:
        if not room_id or state is None:
            logger.debug(f"Ignoring stateUpdate without roomId or state from connection {session.connection_id}")
            return

        async with self._room_guard(room_id):
            self._last_known[room_id] = state
            try:
                await self.backend.set_last_state(room_id, state)
            except BackendUnavailableError as e:
                logger.error(f"Snapshot for room {room_id} not persisted, broadcasting anyway: {e}")
            self._log_phase(room_id, state)
            await self.broadcast(room_id, "stateUpdate", state, exclude=session)
            await self.bridge.publish_state(room_id, state)

    async def chat(self, session: Session, room_id: Optional[str], chat_type: Any, message: Any) -> None:
        if not room_id or not isinstance(message, str):
            logger.debug(f"Ignoring chat without roomId or string message from connection {session.connection_id}")
            return

        payload = ChatPayload(
            type=chat_type if isinstance(chat_type, str) and chat_type else DEFAULT_CHAT_TYPE,
            message=message,
            timestamp=now_millis(),
        ).model_dump()
        async with self._room_guard(room_id):
            # Chat echoes to the sender too, unlike state updates
            await self.broadcast(room_id, "chat", payload)
            await self.bridge.publish_chat(room_id, payload)

    async def handle_remote(self, topic: str, message: Dict[str, Any]) -> None:
        """Deliver a message another process published. Never republished."""
        if topic == TOPIC_ROOMS:
            rooms = message.get("rooms")
            if isinstance(rooms, dict):
                await self._send_all(list(self.sessions.values()), "roomsList", rooms)
            return

        room_id = message.get("roomId")
        if not room_id or room_id not in self.room_sessions:
            return

        if topic == TOPIC_STATE:
            state = message.get("state")
            if state is None:
                return
            async with self._room_guard(room_id):
                self._last_known[room_id] = state
                self._log_phase(room_id, state)
                await self.broadcast(room_id, "stateUpdate", state)
        elif topic == TOPIC_CHAT:
            payload = message.get("payload")
            if not isinstance(payload, dict):
                return
            async with self._room_guard(room_id):
                await self.broadcast(room_id, "chat", payload)

    async def broadcast(self, room_id: str, event: str, data: Any, exclude: Optional[Session] = None) -> None:
        targets = [s for s in self.room_sessions.get(room_id, {}).values() if s is not exclude]
        await self._send_all(targets, event, data)
        logger.debug(f"Broadcast {event} to {len(targets)} connections in room {room_id}")

    async def _send_all(self, targets: List[Session], event: str, data: Any) -> None:
        if not targets:
            return
        results = await asyncio.gather(*(s.send(event, data) for s in targets), return_exceptions=True)
        for target, result in zip(targets, results):
            if isinstance(result, BaseException):
                # The receive loop of a dead connection cleans it up
                logger.warning(f"Error sending {event} to connection {target.connection_id}: {result}")

    def _log_phase(self, room_id: str, state: Any) -> None:
        if not isinstance(state, dict):
            return
        phase = state.get("phase", state.get("status"))
        if phase is not None and phase != self._last_phase.get(room_id):
            self._last_phase[room_id] = phase
            logger.info(f"Room {room_id} entered phase {phase!r}")
