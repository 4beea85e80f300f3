import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket

from logging_config import get_logger

logger = get_logger(__name__)


class Session:
    """One live WebSocket connection and the (at most one) room it is joined to."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid.uuid4())
        self.room_id: Optional[str] = None
        self.player_id: Optional[str] = None
        self._send_lock = asyncio.Lock()
        self._resync_task: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"Session({self.connection_id[:8]}, room={self.room_id})"

    async def send(self, event: str, data: Any) -> None:
        # Frames for one connection go out in the order they were queued
        async with self._send_lock:
            await self.websocket.send_text(json.dumps({"event": event, "data": data}))

    def start_resync(self, interval: float, resync: Callable[["Session"], Awaitable[None]]) -> None:
        if interval <= 0 or (self._resync_task and not self._resync_task.done()):
            return
        self._resync_task = asyncio.create_task(self._resync_loop(interval, resync))
        logger.debug(f"Started resync every {interval}s for connection {self.connection_id}")

    def stop_resync(self) -> None:
        if self._resync_task:
            self._resync_task.cancel()
            self._resync_task = None
            logger.debug(f"Stopped resync for connection {self.connection_id}")

    async def _resync_loop(self, interval: float, resync: Callable[["Session"], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.room_id is None:
                continue
            try:
                await resync(self)
            except Exception as e:
                logger.warning(f"Resync failed for connection {self.connection_id}: {e}")
