"""Application-wide configuration constants."""

import os

# --- Identity ---
APP_VERSION = "0.3.0"

# --- API ---
API_HOST = os.environ.get("SATURN_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("SATURN_API_PORT", "8766"))
LOG_LEVEL = os.environ.get("SATURN_LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    o.strip()
    for o in os.environ.get(
        "SATURN_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
    ).split(",")
    if o.strip()
]

# --- Discovery (UDP) ---
DISCOVERY_PORT = 3000
DISCOVERY_MAGIC = "M99999"
INVITE_MAGIC = "M66666"

# --- Broker (TCP) ---
BROKER_PORT = 9090  # preferred; falls back to an ephemeral port
RECV_SIZE = 4096

# --- File server (TCP) ---
FILE_SERVER_PORT = 9091  # preferred; falls back to an ephemeral port
CHUNK_SIZE = 65536  # 64 KB
WRITE_TIMEOUT = 5.0  # seconds per chunk drain
REQUEST_TIMEOUT = 10.0  # seconds to receive the request line
MIN_REQUEST_BYTES = 10
MAX_REQUEST_HEAD = 8192  # bytes allowed before the request line must end
CLOSE_DELAY = 0.1  # seconds

# --- SDCP ---
STATUS_INTERVAL_MS = 5000
MIN_IDENTITY_LENGTH = 16
REQUEST_ID_LENGTH = 32
TOKEN_HEX_LENGTH = 32
FILE_TOKEN_EXTENSION = ".goo"
