"""Adapter Monitor - observes the host radio power state."""

import asyncio
import logging

from .backend import BLEBackendBase
from .models import AdapterState
from .observable import Observable

logger = logging.getLogger(__name__)


class AdapterMonitor:
    """
    Publishes the adapter state as an Observable.

    The state is refreshed on demand (refresh()) and, once start() has been
    called, by a background poll. Only changes are published.
    """

    def __init__(self, backend: BLEBackendBase, poll_interval: float = 2.0):
        self.backend = backend
        self.poll_interval = poll_interval
        self.state: Observable[AdapterState] = Observable(AdapterState.UNKNOWN, name="adapter")
        self._poll_task: asyncio.Task | None = None

    @property
    def current(self) -> AdapterState:
        return self.state.value

    async def refresh(self) -> AdapterState:
        try:
            new_state = await self.backend.adapter_state()
        except Exception as e:
            logger.warning("Adapter state query failed: %s", e)
            new_state = AdapterState.UNKNOWN
        if new_state != self.state.value:
            logger.info("Adapter state: %s -> %s", self.state.value.value, new_state.value)
            self.state.set(new_state)
        return new_state

    async def start(self) -> None:
        await self.refresh()
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        self._poll_task = None

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.refresh()
