import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import redis
import redis.asyncio as aioredis

from logging_config import get_logger
from redis_keys import REDIS_CHAT_CHANNEL, REDIS_ROOMS_CHANNEL, REDIS_STATE_CHANNEL

logger = get_logger(__name__)

TOPIC_STATE = "state"
TOPIC_CHAT = "chat"
TOPIC_ROOMS = "rooms"

CHANNELS = {
    TOPIC_STATE: REDIS_STATE_CHANNEL,
    TOPIC_CHAT: REDIS_CHAT_CHANNEL,
    TOPIC_ROOMS: REDIS_ROOMS_CHANNEL,
}
TOPICS_BY_CHANNEL = {channel: topic for topic, channel in CHANNELS.items()}

# Called with (topic, message) for every message published by another process
RemoteHandler = Callable[[str, Dict[str, Any]], Awaitable[None]]


class Bridge(Protocol):
    enabled: bool

    async def start(self, handler: RemoteHandler) -> None:
        ...

    async def stop(self) -> None:
        ...

    async def publish_state(self, room_id: str, state: Any) -> None:
        ...

    async def publish_chat(self, room_id: str, payload: Dict[str, Any]) -> None:
        ...

    async def publish_rooms(self, rooms: Dict[str, Any]) -> None:
        ...


class DisabledBridge:
    """Stands in when no broker is configured or reachable: the process serves local fanout only."""

    enabled = False

    async def start(self, handler: RemoteHandler) -> None:
        logger.info("Broker bridge disabled, running in single-process mode")

    async def stop(self) -> None:
        pass

    async def publish_state(self, room_id: str, state: Any) -> None:
        pass

    async def publish_chat(self, room_id: str, payload: Dict[str, Any]) -> None:
        pass

    async def publish_rooms(self, rooms: Dict[str, Any]) -> None:
        pass


class RedisBridge:
    """Mirrors state, chat and registry events between server processes over Redis pub/sub.

    Every process publishes what its own clients send and rebroadcasts what
    other processes publish to its local connections. Messages carry the
    publishing process's instance id so a process ignores its own echoes and
    never republishes a remote message.
    """

    enabled = True

    def __init__(self, redis_client: aioredis.Redis, instance_id: Optional[str] = None):
        self.redis_client = redis_client
        self.instance_id = instance_id or uuid.uuid4().hex
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._handler: Optional[RemoteHandler] = None

    async def start(self, handler: RemoteHandler) -> None:
        self._handler = handler
        # Separate connection for pub/sub (required by Redis)
        self._pubsub = self.redis_client.pubsub()
        await self._pubsub.subscribe(*CHANNELS.values())
        self._task = asyncio.create_task(self._listen())
        logger.info(f"Broker bridge {self.instance_id} subscribed to {', '.join(CHANNELS.values())}")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub:
            try:
                await self._pubsub.aclose()
            except redis.RedisError as e:
                logger.error(f"Error closing pub/sub for bridge {self.instance_id}: {e}")
            self._pubsub = None
        logger.info(f"Broker bridge {self.instance_id} stopped")

    async def publish_state(self, room_id: str, state: Any) -> None:
        await self._publish(TOPIC_STATE, {"roomId": room_id, "state": state})

    async def publish_chat(self, room_id: str, payload: Dict[str, Any]) -> None:
        await self._publish(TOPIC_CHAT, {"roomId": room_id, "payload": payload})

    async def publish_rooms(self, rooms: Dict[str, Any]) -> None:
        await self._publish(TOPIC_ROOMS, {"rooms": rooms})

    async def _publish(self, topic: str, message: Dict[str, Any]) -> None:
        channel = CHANNELS[topic]
        message = {"origin": self.instance_id, **message}
        try:
            subscribers = await self.redis_client.publish(channel, json.dumps(message))
            logger.debug(f"Published {topic} message to {channel}, {subscribers} subscribers")
        except redis.RedisError as e:
            # Local delivery already happened; cross-process replication is best effort
            logger.error(f"Failed to publish {topic} message to {channel}: {e}")

    async def _listen(self) -> None:
        logger.info(f"Starting Redis pub/sub listener for bridge {self.instance_id}")
        while True:
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except redis.RedisError as e:
                logger.error(f"Error in pubsub.get_message() for bridge {self.instance_id}: {e}", exc_info=True)
                await asyncio.sleep(1.0)
                continue

            if message is None or message.get("type") != "message":
                continue
            await self.dispatch(message["channel"], message["data"])

    async def dispatch(self, channel: str, data: str) -> None:
        """Hand one raw pub/sub message to the remote handler, unless it is ours or unreadable."""
        topic = TOPICS_BY_CHANNEL.get(channel)
        if topic is None:
            logger.debug(f"Ignoring message on unexpected channel {channel}")
            return
        try:
            message_data = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Error parsing message from Redis channel {channel}: {e}")
            return
        if not isinstance(message_data, dict):
            logger.error(f"Ignoring non-object message on {channel}")
            return
        if message_data.get("origin") == self.instance_id:
            return

        try:
            await self._handler(topic, message_data)
        except Exception as e:
            logger.error(f"Error processing Redis {topic} message: {e}", exc_info=True)


async def connect_redis(redis_url: str, socket_timeout: float) -> Optional[aioredis.Redis]:
    """Open and ping a Redis client; None when the server cannot be reached."""
    redis_client = aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )
    try:
        await redis_client.ping()
    except (redis.RedisError, OSError) as e:
        logger.error(f"Failed to connect to Redis at {redis_url}: {e}")
        await redis_client.aclose()
        return None
    logger.info(f"Redis client connected successfully to {redis_url}")
    return redis_client
