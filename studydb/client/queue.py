"""
Durable queue of writes made while offline.

Queue entries live in the local cache database (``sync_queue`` table), so
they survive restarts. An entry is only removed once the server has either
applied it or authoritatively rejected it as a conflict.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import func

from ..payloads import MutationKind
from .local_cache import LocalCache, QueuedMutation

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PendingMutation:
    """A queued write, in enqueue order."""
    id: str
    kind: str
    payload: dict
    timestamp: int
    experiment_id: Optional[int] = None

    def to_wire(self) -> dict:
        """Body item for POST /api/sync/push."""
        return {
            'id': self.id,
            'kind': self.kind,
            'payload': self.payload,
            'client_timestamp': self.timestamp,
        }

    @classmethod
    def from_row(cls, row: QueuedMutation) -> "PendingMutation":
        return cls(id=row.id, kind=row.kind, payload=dict(row.payload),
                   timestamp=row.timestamp, experiment_id=row.experiment_id)


class MutationQueue:
    """Append-only log of pending mutations backed by a LocalCache."""

    def __init__(self, cache: LocalCache):
        self.cache = cache

    def _enqueue(self, kind: MutationKind, payload: dict, experiment_id: Optional[int],
                 optimistic: bool, mutation_id: Optional[str], timestamp: Optional[int]) -> PendingMutation:
        kind = MutationKind(kind)
        item = PendingMutation(
            id=mutation_id or str(uuid.uuid4()),
            kind=kind.value,
            payload=payload,
            timestamp=timestamp if timestamp is not None else now_ms(),
            experiment_id=experiment_id,
        )
        # The optimistic cache write and the queue entry commit together or not at all
        with self.cache.writer() as session:
            if optimistic:
                self.cache.apply_optimistic(session, item.kind, item.payload)
            seq = (session.query(func.max(QueuedMutation.seq)).scalar() or 0) + 1
            session.add(QueuedMutation(
                id=item.id, kind=item.kind, payload=item.payload,
                timestamp=item.timestamp, seq=seq, experiment_id=experiment_id,
            ))
        logger.info("Queued %s %s for experiment %s", item.kind, item.id, experiment_id)
        return item

    async def enqueue(self, kind: MutationKind, payload: dict, experiment_id: Optional[int] = None,
                      optimistic: bool = True, mutation_id: Optional[str] = None,
                      timestamp: Optional[int] = None) -> PendingMutation:
        """
        Append a mutation, applying it to the local cache first.

        Args:
            kind: Mutation kind
            payload: JSON-ready payload (already validated by the caller)
            experiment_id: Experiment to re-pull after the mutation syncs
            optimistic: Apply the write to the cache in the same transaction
            mutation_id: Client id (a new UUID by default)
            timestamp: Client creation time in ms since epoch (now by default)
        """
        return await asyncio.to_thread(self._enqueue, kind, payload, experiment_id,
                                       optimistic, mutation_id, timestamp)

    def _drain(self) -> List[PendingMutation]:
        with self.cache.session() as session:
            rows = (session.query(QueuedMutation)
                    .order_by(QueuedMutation.timestamp, QueuedMutation.seq)
                    .all())
            return [PendingMutation.from_row(r) for r in rows]

    async def drain(self) -> List[PendingMutation]:
        """All pending mutations, oldest first. Entries stay queued."""
        return await asyncio.to_thread(self._drain)

    def _remove(self, ids: List[str]) -> int:
        if not ids:
            return 0
        with self.cache.writer() as session:
            return (session.query(QueuedMutation)
                    .filter(QueuedMutation.id.in_(ids))
                    .delete(synchronize_session=False))

    async def remove(self, ids: Iterable[str]) -> int:
        """Delete confirmed mutations. Returns how many were removed."""
        return await asyncio.to_thread(self._remove, list(ids))

    remove_confirmed = remove

    def _count(self) -> int:
        with self.cache.session() as session:
            return session.query(QueuedMutation).count()

    async def count(self) -> int:
        return await asyncio.to_thread(self._count)
