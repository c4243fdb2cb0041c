"""
StudyDB - Longitudinal Animal Study Data with Offline Sync

Records treatment assignment, daily clinical observations and biospecimen
inventory for animal studies. Field devices keep a local cache and a durable
queue of pending writes, which are replayed against the server when the
network comes back.

Usage:
    studydb-init            # Create the server database
    studydb-status          # Show database stats
    studydb-serve           # Run the sync/API server
    studydb-sync            # Replay queued offline writes
    studydb-survival        # Print Kaplan-Meier curves
"""

__version__ = "0.1.0"
__author__ = "Logan Friedrich"

import os
from pathlib import Path

# Default paths - use environment variable or fallback to default
STUDYDB_ROOT = Path(os.environ.get("STUDYDB_ROOT", Path.home() / ".studydb"))
DEFAULT_DB_PATH = STUDYDB_ROOT / "studydb.db"
DEFAULT_LOG_PATH = STUDYDB_ROOT / "logs"
