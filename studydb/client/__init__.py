"""
Field client: local cache, offline mutation queue and sync coordinator.

Typical wiring:

    cache = LocalCache()
    queue = MutationQueue(cache)
    api = StudyDBClient()
    coordinator = SyncCoordinator(cache, queue, api, ManualConnectivity())
    entry = DataEntryService(cache, queue, api, coordinator.connectivity)
"""

from .api import StudyDBClient
from .connectivity import ConnectivityProvider, HttpHealthConnectivity, ManualConnectivity
from .entry import DataEntryService, EntryResult
from .local_cache import LocalCache
from .queue import MutationQueue, PendingMutation
from .sync_manager import SyncCoordinator, SyncReport
