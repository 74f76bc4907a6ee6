"""
Court Sync Configuration
"""
import os
from pathlib import Path

from dotenv import dotenv_values

# Load environment variables from .env file
_env_path = Path(__file__).parent / ".env"
if _env_path.exists():
    for key, value in dotenv_values(_env_path).items():
        if value and not os.environ.get(key):  # Set if value exists and env not already set
            os.environ[key] = value

# Base paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("COURT_DATA_DIR", str(BASE_DIR / "data")))

# Backend endpoints
COURT_API_URL = os.getenv("COURT_API_URL", "http://localhost:3000/api")
COURT_SOCKET_URL = os.getenv("COURT_SOCKET_URL", "http://localhost:3000")

# HTTP transport timeout (seconds)
REQUEST_TIMEOUT_SECONDS = float(os.getenv("COURT_REQUEST_TIMEOUT", "30"))

# Query cache
STALE_TIME_SECONDS = 5 * 60
GC_TIME_SECONDS = 10 * 60
GC_INTERVAL_SECONDS = 60
QUERY_RETRY_COUNT = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 30.0

# Realtime channel
SOCKET_CONNECT_TIMEOUT_SECONDS = 10
SOCKET_RECONNECT_ATTEMPTS = 3
SOCKET_RECONNECT_DELAY_SECONDS = 2

# Polling fallback
POLL_INTERVAL_SECONDS = int(os.getenv("COURT_POLL_INTERVAL", "30"))
CONNECTED_POLL_INTERVAL_SECONDS = int(os.getenv("COURT_CONNECTED_POLL_INTERVAL", "300"))

# Durable storage keys
CASES_STORAGE_KEY = "court_cases"
USER_STORAGE_KEY = "court_user"
LAST_ROUTE_STORAGE_KEY = "last_route"
TOKEN_STORAGE_KEY = "auth_token"
REFRESH_TOKEN_STORAGE_KEY = "refresh_token"
