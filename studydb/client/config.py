"""Field client configuration."""

import os
from pathlib import Path

from .. import STUDYDB_ROOT

# Authoritative server
SERVER_URL = os.environ.get("STUDYDB_SERVER_URL", "http://localhost:8000")

# Per-device offline cache
CACHE_PATH = Path(os.environ.get("STUDYDB_CACHE_PATH", STUDYDB_ROOT / "offline_cache.db"))

# Seconds between background sync attempts while online
SYNC_INTERVAL = float(os.environ.get("STUDYDB_SYNC_INTERVAL", "30"))

# Seconds before an HTTP request to the server is abandoned
HTTP_TIMEOUT = float(os.environ.get("STUDYDB_HTTP_TIMEOUT", "10"))
