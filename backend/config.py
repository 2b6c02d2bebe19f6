"""Application-wide configuration constants."""

import json
import os
from pathlib import Path

_PREFIX = "SHARELINK_"


def _env_str(name: str, default: str) -> str:
    return os.environ.get(_PREFIX + name, default)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(_PREFIX + name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(_PREFIX + name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(_PREFIX + name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_json(name: str, default):
    value = os.environ.get(_PREFIX + name)
    return json.loads(value) if value else default


# --- Relay ---
API_HOST = _env_str("API_HOST", "0.0.0.0")
API_PORT = _env_int("API_PORT", 3000)
CORS_ORIGINS = _env_json(
    "CORS_ORIGINS", ["http://localhost:3000", "http://127.0.0.1:3000"]
)
SWEEP_INTERVAL = _env_float("SWEEP_INTERVAL", 30.0)  # seconds

# --- Peer / signaling client ---
RELAY_URL = _env_str("RELAY_URL", "ws://localhost:3000/ws")
DEVICE_ID_LENGTH = _env_int("DEVICE_ID_LENGTH", 6)
DEVICE_ID_MIN_LENGTH = 3
DEVICE_ID_MAX_LENGTH = 20
MAX_SIGNALING_DATA_SIZE = _env_int("MAX_SIGNALING_DATA_SIZE", 10000)  # bytes of JSON
POLL_INTERVAL = _env_float("POLL_INTERVAL", 5.0)  # device list refresh
RECONNECT_DELAY = _env_float("RECONNECT_DELAY", 2.0)

# --- Negotiation ---
ICE_SERVERS = _env_json(
    "ICE_SERVERS",
    [
        {"urls": "stun:stun.l.google.com:19302"},
        {"urls": "stun:stun1.l.google.com:19302"},
        {"urls": "stun:stun2.l.google.com:19302"},
    ],
)
LAN_FAST_PATH = _env_bool("LAN_FAST_PATH", True)
ANSWERER_FALLBACK_TIMEOUT = _env_float("ANSWERER_FALLBACK_TIMEOUT", 5.0)
OFFER_START_DELAY = 0.15  # lets a freshly built connection settle
COLLISION_WAIT = 0.5
RESET_GRACE_PERIOD = 0.2
RECREATE_GRACE_PERIOD = 0.3
DATA_CHANNEL_LABEL = "file"
DATA_CHANNEL_MAX_RETRANSMITS = _env_json("DATA_CHANNEL_MAX_RETRANSMITS", None)

# --- Transfer ---
CHUNK_SIZE = _env_int("CHUNK_SIZE", 256 * 1024)  # 256 KB
MAX_BUFFERED_AMOUNT = _env_int("MAX_BUFFERED_AMOUNT", 8 * 1024 * 1024)  # 8 MB
HIGH_WATER_RATIO = 0.8
LOW_WATER_RATIO = 0.6
BUFFER_CHECK_INTERVAL = 0.005  # seconds
BUFFER_WAIT_TIMEOUT = _env_float("BUFFER_WAIT_TIMEOUT", 5.0)
QUEUE_FULL_RETRY_DELAY = 0.05
CHUNK_DELAY = 0.0  # optional inter-chunk throttle
PROGRESS_UPDATE_INTERVAL = 0.2

EOF_TIMEOUT = _env_float("EOF_TIMEOUT", 10.0)  # size matched but no EOF
EOF_GRACE_PERIOD = _env_float("EOF_GRACE_PERIOD", 2.0)
EOF_MAX_WAIT = _env_float("EOF_MAX_WAIT", 10.0)
COMPLETION_THRESHOLD = _env_float("COMPLETION_THRESHOLD", 0.999)
FINALIZE_TIMEOUT = 5.0

# --- Storage ---
SAVE_DIR = _env_str(
    "SAVE_DIR", str(Path.home() / "Downloads" / "ShareLink")
)
