import os
import uuid

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 5000))
RELOAD = os.getenv("RELOAD", "0") == "1"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

RELAY_WS_PATH = os.getenv("RELAY_WS_PATH", "/ws")
RELAY_INSTANCE_ID = os.getenv("RELAY_INSTANCE_ID", uuid.uuid4().hex)

# Unset means single-process mode, no cross-instance fan-out
REDIS_URL = os.getenv("REDIS_URL", None)

TRUST_PROXY_IDENTITY = os.getenv("TRUST_PROXY_IDENTITY", "0") == "1"
PROXY_USER_ID_HEADER = "x-user-id"
PROXY_USERNAME_HEADER = "x-username"

CORS_ALLOW_ORIGINS = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]

# Seconds, handed to uvicorn for transport-level idle detection
WS_PING_INTERVAL = float(os.getenv("WS_PING_INTERVAL", 20))
WS_PING_TIMEOUT = float(os.getenv("WS_PING_TIMEOUT", 20))

# Frames queued per connection before further frames to it are dropped
RELAY_OUTBOX_SIZE = int(os.getenv("RELAY_OUTBOX_SIZE", 256))

# Seconds between backplane resubscribe attempts, doubling up to the max
BACKPLANE_RETRY_DELAY = float(os.getenv("BACKPLANE_RETRY_DELAY", 0.5))
BACKPLANE_RETRY_MAX_DELAY = float(os.getenv("BACKPLANE_RETRY_MAX_DELAY", 30))
