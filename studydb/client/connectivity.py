"""
Connectivity providers for the field client.

The sync coordinator never checks the network itself; it asks an injected
provider whether the server is reachable and subscribes to transitions.
"""

import asyncio
import logging
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityProvider:
    """Base provider: tracks a boolean state and notifies listeners on change."""

    def __init__(self, online: bool = False):
        self._online = online
        self._listeners: List[Listener] = []

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback for online/offline transitions. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _set_state(self, online: bool):
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            listener(online)


class ManualConnectivity(ConnectivityProvider):
    """Connectivity set explicitly (tests, or a device with a manual offline switch)."""

    def __init__(self, online: bool = True):
        super().__init__(online)

    def set_online(self, online: bool):
        self._set_state(online)


class HttpHealthConnectivity(ConnectivityProvider):
    """Polls the server's health endpoint to decide whether it is reachable."""

    def __init__(self, client: httpx.AsyncClient, interval: float = 15.0,
                 health_path: str = "/api/health"):
        super().__init__(online=False)
        self.client = client
        self.interval = interval
        self.health_path = health_path
        self._task: Optional[asyncio.Task] = None

    async def check_now(self) -> bool:
        try:
            response = await self.client.get(self.health_path)
            online = response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("Health check failed: %s", e)
            online = False
        self._set_state(online)
        return online

    async def _run(self):
        while True:
            await self.check_now()
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
