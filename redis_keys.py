REDIS_STATE_KEY = "relay:state:{slug}"  # room id - latest snapshot JSON, expires
REDIS_ROOMS_KEY = "relay:rooms"  # full registry document JSON

REDIS_STATE_CHANNEL = "relay:channel:state"
REDIS_CHAT_CHANNEL = "relay:channel:chat"
REDIS_ROOMS_CHANNEL = "relay:channel:rooms"

# **Pub/Sub payloads**
# - state: `{"origin": instanceId, "roomId": ..., "state": {...}}`
# - chat:  `{"origin": instanceId, "roomId": ..., "payload": {"type", "message", "timestamp"}}`
# - rooms: `{"origin": instanceId, "rooms": {roomId: PublicRoomView}}`
#
# `origin` lets a process drop its own messages; the local broadcast has
# already happened by the time a message comes back from Redis.
