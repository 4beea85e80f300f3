import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))

# Presence of REDIS_URL switches on the shared store and the pub/sub bridge
REDIS_URL = os.getenv("REDIS_URL", None)
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", 2.0))

STATE_TTL_SECONDS = int(os.getenv("STATE_TTL_SECONDS", 3 * 24 * 60 * 60))
MAX_PLAYERS = int(os.getenv("MAX_PLAYERS", 4))

# Seconds between server-side snapshot resyncs per session, 0 disables
RESYNC_INTERVAL = float(os.getenv("RESYNC_INTERVAL", 0))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

DEFAULT_CHAT_TYPE = "player"
