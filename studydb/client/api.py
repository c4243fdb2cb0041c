"""HTTP client for the StudyDB server."""

import logging
from typing import List, Optional

import httpx

from ..validators import NotFoundError, ValidationError
from .config import HTTP_TIMEOUT, SERVER_URL

logger = logging.getLogger(__name__)


class StudyDBClient:
    """
    Thin async wrapper around the server's JSON API.

    Transport failures and 5xx responses raise ``httpx.HTTPError`` so callers
    can fall back to offline mode; 400 and 404 responses are re-raised as
    ValidationError / NotFoundError since retrying them would not help.
    """

    def __init__(self, base_url: str = SERVER_URL, timeout: float = HTTP_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self.http.aclose()

    def _unwrap(self, response: httpx.Response):
        if response.status_code == 400:
            body = response.json()
            raise ValidationError(body.get('field', 'request'), None, body.get('error', response.text))
        if response.status_code == 404:
            raise NotFoundError('Resource', response.json().get('error', response.url.path))
        response.raise_for_status()
        return response.json().get('data')

    async def health(self) -> dict:
        response = await self.http.get("/api/health")
        response.raise_for_status()
        return response.json()

    async def push(self, mutations: List[dict]) -> List[dict]:
        """Replay queued mutations; returns one result dict per mutation."""
        response = await self.http.post("/api/sync/push", json={"mutations": mutations})
        return self._unwrap(response)

    async def pull(self, experiment_id: int) -> dict:
        """Download an experiment snapshot for offline use."""
        response = await self.http.get(f"/api/sync/experiment/{experiment_id}")
        return self._unwrap(response)

    async def get_experiment(self, experiment_id: int) -> dict:
        response = await self.http.get(f"/api/experiments/{experiment_id}")
        return self._unwrap(response)

    async def update_experiment(self, experiment_id: int, changes: dict) -> dict:
        response = await self.http.put(f"/api/experiments/{experiment_id}", json=changes)
        return self._unwrap(response)

    async def create_observation(self, payload: dict) -> dict:
        response = await self.http.post("/api/observations", json=payload)
        return self._unwrap(response)

    async def create_observations_batch(self, payload: dict) -> List[dict]:
        response = await self.http.post("/api/observations/batch", json=payload)
        return self._unwrap(response)
