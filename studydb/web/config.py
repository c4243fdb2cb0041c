"""Web application configuration."""

import os

# Server settings
HOST = os.environ.get("STUDYDB_WEB_HOST", "0.0.0.0")
PORT = int(os.environ.get("STUDYDB_WEB_PORT", "8000"))

# Offline snapshots carry this many days of observations
PULL_WINDOW_DAYS = int(os.environ.get("STUDYDB_PULL_WINDOW_DAYS", "30"))
