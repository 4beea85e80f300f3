from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import MemoryBackend, RedisBackend, StateBackend
from bridge import Bridge, DisabledBridge, RedisBridge, connect_redis
from constants import (
    LOG_FILE,
    LOG_LEVEL,
    MAX_PLAYERS,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
    RESYNC_INTERVAL,
    STATE_TTL_SECONDS,
)
from fanout import FanoutEngine
from logging_config import get_logger, setup_logging
from registry import RoomRegistry
from routers.realtime import realtime_router
from routers.rooms import rooms_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def build_backends(redis_url: Optional[str], state_ttl: int, socket_timeout: float):
    """Pick the store and bridge variants once, at startup.

    Without REDIS_URL, or when Redis does not answer, the process keeps
    everything in memory and relays between its own connections only.
    """
    if redis_url:
        redis_client = await connect_redis(redis_url, socket_timeout)
        if redis_client is not None:
            return RedisBackend(redis_client, state_ttl=state_ttl), RedisBridge(redis_client)
        logger.warning("Redis unreachable, falling back to in-memory store without broker bridge")
    return MemoryBackend(state_ttl=state_ttl), DisabledBridge()


def create_app(
    redis_url: Optional[str] = REDIS_URL,
    backend: Optional[StateBackend] = None,
    bridge: Optional[Bridge] = None,
    state_ttl: int = STATE_TTL_SECONDS,
    max_players: int = MAX_PLAYERS,
    resync_interval: float = RESYNC_INTERVAL,
    socket_timeout: float = REDIS_SOCKET_TIMEOUT,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_backend, app_bridge = backend, bridge
        if app_backend is None:
            app_backend, default_bridge = await build_backends(redis_url, state_ttl, socket_timeout)
            app_bridge = app_bridge or default_bridge
        app_bridge = app_bridge or DisabledBridge()

        registry = RoomRegistry(app_backend, max_players=max_players)
        engine = FanoutEngine(app_backend, registry, app_bridge, resync_interval=resync_interval)
        await app_bridge.start(engine.handle_remote)
        app.state.engine = engine
        logger.info(f"Relay ready: store={type(app_backend).__name__}, bridge={type(app_bridge).__name__}")
        try:
            yield
        finally:
            await app_bridge.stop()
            await app_backend.close()
            logger.info("Relay shut down")

    app = FastAPI(title="card-relay", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(realtime_router)

    @app.get("/health")
    async def health():
        engine = app.state.engine
        return {
            "status": "ok",
            "bridge": engine.bridge.enabled,
            "connections": len(engine.sessions),
            "rooms": len(engine.room_sessions),
        }

    logger.info("FastAPI application initialized")
    return app


app = create_app()
