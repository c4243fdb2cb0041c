"""
Sync coordinator for the field client.

Replays the mutation queue against the server and refreshes the local cache
from fresh snapshots. A pass runs when connectivity comes back, on a timer
while online with work queued, or on demand via ``sync_now()``. Only one pass
runs at a time; overlapping triggers wait for the pass already in flight.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from ..validators import NotFoundError, ValidationError
from .api import StudyDBClient
from .config import SYNC_INTERVAL
from .connectivity import ConnectivityProvider
from .local_cache import LocalCache
from .queue import MutationQueue, PendingMutation

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Outcome of one sync pass, for display only."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'total': self.total,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'conflicts': self.conflicts,
            'errors': list(self.errors),
        }


class SyncCoordinator:
    """Drives queue replay (push) and cache refresh (pull)."""

    def __init__(self, cache: LocalCache, queue: MutationQueue, api: StudyDBClient,
                 connectivity: ConnectivityProvider, interval: float = SYNC_INTERVAL):
        self.cache = cache
        self.queue = queue
        self.api = api
        self.connectivity = connectivity
        self.interval = interval

        self.last_report: Optional[SyncReport] = None
        # Mutations the server resolved against us, kept for the user to review
        self.conflicted: List[PendingMutation] = []

        self._pass: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._unsubscribe = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -------------------------------------------------------------------------
    # One pass
    # -------------------------------------------------------------------------

    async def sync_pending_mutations(self) -> SyncReport:
        """
        Push every queued mutation, then refresh the touched experiments.

        Successes and conflicts leave the queue; failures stay for a later
        pass. A failed push leaves the queue exactly as it was.
        """
        pending = await self.queue.drain()
        report = SyncReport(total=len(pending))
        if not pending:
            return report

        try:
            results = await self.api.push([m.to_wire() for m in pending])
        except httpx.HTTPError as e:
            logger.warning("Sync push failed, %d mutations stay queued: %s", len(pending), e)
            report.failed = len(pending)
            report.errors.append(f"Push failed: {e}")
            return report

        by_id: Dict[str, dict] = {r['id']: r for r in results}
        confirmed = []
        for mutation in pending:
            result = by_id.get(mutation.id)
            if result is None:
                report.failed += 1
                report.errors.append(f"{mutation.kind} {mutation.id}: no result from server")
            elif result.get('success') and result.get('conflict'):
                report.conflicts += 1
                confirmed.append(mutation.id)
                self.conflicted.append(mutation)
                logger.info("Conflict on %s %s: server kept its newer data", mutation.kind, mutation.id)
            elif result.get('success'):
                report.succeeded += 1
                confirmed.append(mutation.id)
            else:
                report.failed += 1
                report.errors.append(f"{mutation.kind} {mutation.id}: {result.get('error', 'unknown error')}")

        await self.queue.remove(confirmed)

        experiment_ids = sorted({m.experiment_id for m in pending if m.experiment_id is not None})
        for experiment_id in experiment_ids:
            await self._refresh(experiment_id)

        logger.info("Sync pass: %d total, %d succeeded, %d failed, %d conflicts",
                    report.total, report.succeeded, report.failed, report.conflicts)
        return report

    async def _refresh(self, experiment_id: int):
        """Best-effort snapshot refresh; a failure leaves the cache stale."""
        try:
            snapshot = await self.api.pull(experiment_id)
            await self.cache.store_snapshot(snapshot)
        except (httpx.HTTPError, NotFoundError, ValidationError, SQLAlchemyError) as e:
            logger.warning("Could not refresh experiment %s after sync: %s", experiment_id, e)

    async def _run_pass(self) -> SyncReport:
        report = await self.sync_pending_mutations()
        self.last_report = report
        return report

    def _start_pass(self) -> asyncio.Task:
        if self._pass is None or self._pass.done():
            self._pass = asyncio.get_running_loop().create_task(self._run_pass())
        return self._pass

    async def sync_now(self) -> SyncReport:
        """Run a sync pass, or wait for the one already running."""
        return await asyncio.shield(self._start_pass())

    @property
    def is_syncing(self) -> bool:
        return self._pass is not None and not self._pass.done()

    async def download_for_offline(self, experiment_id: int) -> dict:
        """Pull one experiment into the cache on demand. Returns its sync metadata."""
        snapshot = await self.api.pull(experiment_id)
        return await self.cache.store_snapshot(snapshot)

    async def status(self) -> dict:
        return {
            'online': self.connectivity.is_online(),
            'pending': await self.queue.count(),
            'syncing': self.is_syncing,
            'conflicted': len(self.conflicted),
            'last_report': self.last_report.to_dict() if self.last_report else None,
        }

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def _log_pass_failure(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background sync pass failed", exc_info=error)

    def _start_background_pass(self):
        task = self._start_pass()
        task.add_done_callback(self._log_pass_failure)

    def _on_connectivity(self, online: bool):
        if online and self._loop is not None:
            logger.info("Back online, syncing queued mutations")
            # Providers may notify from another thread
            self._loop.call_soon_threadsafe(self._start_background_pass)

    async def _tick(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                if self.connectivity.is_online() and await self.queue.count() > 0:
                    await self.sync_now()
            except Exception:
                # Keep the timer alive; the queue is retried on the next tick
                logger.exception("Periodic sync pass failed")

    def start(self):
        """Start the periodic timer and listen for offline-to-online transitions."""
        self._loop = asyncio.get_running_loop()
        if self._unsubscribe is None:
            self._unsubscribe = self.connectivity.subscribe(self._on_connectivity)
        if self._timer is None or self._timer.done():
            self._timer = self._loop.create_task(self._tick())

    async def stop(self):
        """Stop triggering passes and let any pass in flight finish."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if self._pass is not None and not self._pass.done():
            # A failed pass is reported by whichever trigger started it
            await asyncio.gather(self._pass, return_exceptions=True)
