"""
Pytest will auto-discover / import this file called 'conftest.py'.
Fixtures here build the relay layers without a network: a fake WebSocket
that records frames, the in-memory backend and an engine around them.
"""

import json
from typing import Any, Dict, List

import pytest

from backend import MemoryBackend
from bridge import DisabledBridge
from fanout import FanoutEngine
from registry import RoomRegistry
from session import Session


class FakeWebSocket:
    """Records every frame a Session sends."""

    def __init__(self, fail: bool = False):
        self.frames: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(text))

    def events(self, name: str) -> List[Any]:
        return [frame["data"] for frame in self.frames if frame["event"] == name]


class RecordingBridge(DisabledBridge):
    """A bridge that records what would have been published."""

    enabled = True

    def __init__(self):
        self.published: List[tuple] = []
        self.handler = None

    async def start(self, handler) -> None:
        self.handler = handler

    async def publish_state(self, room_id, state) -> None:
        self.published.append(("state", room_id, state))

    async def publish_chat(self, room_id, payload) -> None:
        self.published.append(("chat", room_id, payload))

    async def publish_rooms(self, rooms) -> None:
        self.published.append(("rooms", None, rooms))


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def registry(backend) -> RoomRegistry:
    return RoomRegistry(backend, max_players=4)


@pytest.fixture
def bridge() -> RecordingBridge:
    return RecordingBridge()


@pytest.fixture
def engine(backend, registry, bridge) -> FanoutEngine:
    return FanoutEngine(backend, registry, bridge, resync_interval=0)


@pytest.fixture
def make_session(engine):
    """Connect a new session to the engine; returns (session, fake websocket)."""

    async def _make(fail: bool = False):
        websocket = FakeWebSocket()
        session = Session(websocket)
        await engine.connect(session)
        websocket.fail = fail
        return session, websocket

    return _make
