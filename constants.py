import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

REDIS_URL = os.getenv("REDIS_URL") or (
    f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}" if REDIS_PASSWORD else f"redis://{REDIS_HOST}:{REDIS_PORT}"
)

# "redis" tries the durable store first and falls back to memory, "memory" skips Redis entirely
ROOM_STORE_BACKEND = os.getenv("ROOM_STORE_BACKEND", "redis").lower()

ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 24 * 60 * 60))
ROOM_SWEEP_INTERVAL_SECONDS = int(os.getenv("ROOM_SWEEP_INTERVAL_SECONDS", 6 * 60 * 60))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", 30))

ROOM_ID_LENGTH = 6
OWNER_TOKEN_BYTES = 16
PARTICIPANT_TOKEN_BYTES = 12

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)
