"""
Offline-aware data entry for the field client.

Every write is validated locally first, so bad input is rejected before
anything is sent or queued. Valid writes go straight to the server when it
is reachable; otherwise (or if the request fails in transit) they are queued
and applied to the local cache optimistically.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from ..payloads import MutationKind, parse_payload, subject_ids_of
from ..validators import NotFoundError, ValidationError
from .api import StudyDBClient
from .connectivity import ConnectivityProvider
from .local_cache import LocalCache
from .queue import MutationQueue, now_ms

logger = logging.getLogger(__name__)

# Push failures worth retrying later rather than reporting to the user
TRANSIENT_ERROR_TYPES = ("database", "internal")


class ServerWriteFailed(Exception):
    """The server accepted the request but could not store the write."""


def _without_alerts(obs: dict) -> dict:
    return {key: value for key, value in obs.items() if key not in ("alerts", "css_severity")}


@dataclass
class EntryResult:
    """Where a write ended up."""
    queued: bool
    mutation_id: Optional[str] = None   # set when queued
    data: Optional[object] = None       # server response when sent directly
    alerts: List[dict] = field(default_factory=list)


class DataEntryService:
    """Routes each write to the server or to the offline queue."""

    def __init__(self, cache: LocalCache, queue: MutationQueue, api: StudyDBClient,
                 connectivity: ConnectivityProvider):
        self.cache = cache
        self.queue = queue
        self.api = api
        self.connectivity = connectivity

    async def _experiment_for(self, subject_ids: List[int]) -> Optional[int]:
        for subject_id in subject_ids:
            experiment_id = await self.cache.experiment_id_for_subject(subject_id)
            if experiment_id is not None:
                return experiment_id
        return None

    async def _queue(self, kind: MutationKind, payload: dict, subject_ids: List[int]) -> EntryResult:
        experiment_id = await self._experiment_for(subject_ids)
        item = await self.queue.enqueue(kind, payload, experiment_id)
        return EntryResult(queued=True, mutation_id=item.id)

    async def _send(self, kind: MutationKind, payload: dict):
        if kind == MutationKind.CREATE_OBSERVATION:
            data = await self.api.create_observation(payload)
            await self.cache.put_observation(_without_alerts(data))
            return data, data.get('alerts', [])
        if kind == MutationKind.CREATE_OBSERVATIONS_BATCH:
            data = await self.api.create_observations_batch(payload)
            for obs in data:
                await self.cache.put_observation(_without_alerts(obs))
            return data, [a for obs in data for a in obs.get('alerts', [])]

        # Exits and samples have no direct endpoint; push them as a one-item batch
        results = await self.api.push([{
            'id': str(uuid.uuid4()),
            'kind': kind.value,
            'payload': payload,
            'client_timestamp': now_ms(),
        }])
        result = results[0]
        if not result.get("success"):
            error = result.get("error", "rejected by server")
            error_type = result.get("error_type")
            if error_type in TRANSIENT_ERROR_TYPES:
                raise ServerWriteFailed(error)
            if error_type == "not_found":
                raise NotFoundError("Resource", error)
            # The server saw it and said no; queueing it would only fail again
            raise ValidationError(kind.value, payload, error)
        return result, []

    async def submit(self, kind: MutationKind, payload: dict) -> EntryResult:
        """
        Validate and record one write.

        Raises:
            ValidationError: if the payload is invalid (nothing is sent or queued)
            NotFoundError: if the server has no record of a subject in a direct write
        """
        kind = MutationKind(kind)
        parsed = parse_payload(kind, payload)
        wire_payload = parsed.model_dump(mode='json')
        subject_ids = subject_ids_of(kind, parsed)

        if self.connectivity.is_online():
            try:
                data, alerts = await self._send(kind, wire_payload)
                return EntryResult(queued=False, data=data, alerts=alerts)
            except (httpx.HTTPError, ServerWriteFailed) as e:
                logger.warning("Direct %s failed, queueing for later sync: %s", kind.value, e)

        return await self._queue(kind, wire_payload, subject_ids)

    async def record_observation(self, payload: dict) -> EntryResult:
        return await self.submit(MutationKind.CREATE_OBSERVATION, payload)

    async def record_observations_batch(self, payload: dict) -> EntryResult:
        return await self.submit(MutationKind.CREATE_OBSERVATIONS_BATCH, payload)

    async def record_exit(self, payload: dict) -> EntryResult:
        return await self.submit(MutationKind.RECORD_EXIT, payload)

    async def record_samples(self, payload: dict) -> EntryResult:
        return await self.submit(MutationKind.CREATE_SAMPLES_BATCH, payload)
