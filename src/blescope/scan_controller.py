"""
Scan Controller - discovery sessions with timeout and filters.

Results are published as an immutable tuple in insertion order of first
sighting, deduplicated by device address. Starting a scan while one is
running is rejected with ScanAlreadyActive.
"""

import asyncio
import logging
from collections.abc import Callable

from .adapter_monitor import AdapterMonitor
from .backend import BLEBackendBase
from .errors import AdapterUnavailable, ScanAlreadyActive, StackFailure
from .models import PeripheralHandle, ScanFilters
from .observable import Observable

logger = logging.getLogger(__name__)


class ScanController:
    """Owns the one discovery operation of a backend."""

    def __init__(
        self,
        backend: BLEBackendBase,
        adapter_monitor: AdapterMonitor,
        retain: Callable[[str], bool] | None = None,
        default_timeout: float = 10.0,
    ):
        """
        Args:
            backend: Bluetooth stack backend
            adapter_monitor: Gate for AdapterUnavailable
            retain: Returns True for addresses whose entries survive into the
                    next scan session (connected peripherals)
            default_timeout: Scan duration when start_scan() gets none
        """
        self.backend = backend
        self.adapter_monitor = adapter_monitor
        self.retain = retain or (lambda address: False)
        self.default_timeout = default_timeout

        self.results: Observable[tuple[PeripheralHandle, ...]] = Observable((), name="scan_results")
        self.is_scanning: Observable[bool] = Observable(False, name="is_scanning")

        self._entries: dict[str, PeripheralHandle] = {}
        self._filters = ScanFilters()
        self._active = False
        self._timeout_task: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._lock = asyncio.Lock()

    @property
    def scanning(self) -> bool:
        return self._active

    @property
    def filters(self) -> ScanFilters:
        return self._filters

    async def start_scan(
        self, timeout: float | None = None, filters: ScanFilters | None = None
    ) -> None:
        """
        Begin discovery; returns once the stack is scanning.

        Raises:
            AdapterUnavailable: radio is off
            ScanAlreadyActive: a scan is already running
            StackFailure: the stack refused to start
        """
        timeout = self.default_timeout if timeout is None else timeout
        async with self._lock:
            if self._active:
                raise ScanAlreadyActive("A scan is already running")

            adapter_state = await self.adapter_monitor.refresh()
            if not adapter_state.usable:
                raise AdapterUnavailable(f"Bluetooth adapter is {adapter_state.value}")

            self._filters = filters or ScanFilters()
            # New session: stale entries go, connected peripherals stay
            self._entries = {
                key: entry for key, entry in self._entries.items() if self.retain(entry.address)
            }
            self.results.set(tuple(self._entries.values()))

            self._active = True
            self._stopped.clear()
            try:
                await self.backend.start_scan(
                    self._on_advertisement, list(self._filters.service_uuids)
                )
            except Exception as e:
                self._active = False
                self._stopped.set()
                logger.error("Error starting BLE scan: %s", e)
                raise StackFailure.wrap("start scan", e) from e

            self.is_scanning.set(True)
            self._timeout_task = asyncio.create_task(self._auto_stop(timeout))
            logger.info("🔍 Scan started (timeout %.1fs, filters %s)", timeout, self._filters)

    async def stop_scan(self) -> None:
        """End discovery early. No-op when not scanning."""
        timeout_task, self._timeout_task = self._timeout_task, None
        if timeout_task is not None and timeout_task is not asyncio.current_task():
            timeout_task.cancel()
        await self._stop(reason="stopped")

    async def scan(
        self, timeout: float | None = None, filters: ScanFilters | None = None
    ) -> tuple[PeripheralHandle, ...]:
        """Run a full scan session and return what it found."""
        await self.start_scan(timeout, filters)
        await self.wait_stopped()
        return self.results.value

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def _auto_stop(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        # Past this point stop_scan() must not cancel us mid-teardown
        if self._timeout_task is asyncio.current_task():
            self._timeout_task = None
        try:
            await self._stop(reason="timeout")
        except StackFailure:
            pass  # logged in _stop

    async def _stop(self, reason: str) -> None:
        async with self._lock:
            if not self._active:
                return
            # Deliveries stop here; entries already published are kept
            self._active = False
            try:
                await self.backend.stop_scan()
            except Exception as e:
                logger.error("Error stopping BLE scan: %s", e)
                raise StackFailure.wrap("stop scan", e) from e
            finally:
                self.is_scanning.set(False)
                self._stopped.set()
                logger.info("Scan %s, %d device(s)", reason, len(self._entries))

    def _on_advertisement(self, peripheral: PeripheralHandle) -> None:
        if not self._active:
            return

        previous = self._entries.get(peripheral.key)
        # Keep a name learned from an earlier advertisement if this one has none
        if previous is not None and not peripheral.name and previous.name:
            peripheral = PeripheralHandle(
                address=peripheral.address,
                name=previous.name,
                rssi=peripheral.rssi,
                service_uuids=peripheral.service_uuids or previous.service_uuids,
                last_seen=peripheral.last_seen,
            )

        if not self._filters.matches(peripheral):
            return
        if previous is not None and (
            previous.name == peripheral.name and previous.rssi == peripheral.rssi
        ):
            return

        if previous is None:
            logger.debug("New device %s (%s) rssi=%d", peripheral.address, peripheral.name, peripheral.rssi)
        # dict keeps first-insertion order when a key is reassigned
        self._entries[peripheral.key] = peripheral
        self.results.set(tuple(self._entries.values()))
