"""
Inspector - one backend, five components, one command surface.

This is what the HTTP service and the CLI drive:

    async with Inspector.from_config(cfg) as inspector:
        found = await inspector.scan(timeout=5.0, filters=ScanFilters.build(names=["Sensor"]))
        await inspector.connect(found[0])
        services = await inspector.discover_services(found[0])
"""

import logging
from collections.abc import Callable

from .adapter_monitor import AdapterMonitor
from .backend import BLEBackendBase, create_backend
from .config_loader import BLEConfig, Config
from .discovery import DiscoveryEngine
from .errors import NotConnected, StackFailure
from .models import (
    CharacteristicDescriptor,
    CharacteristicSample,
    PeripheralHandle,
    ScanFilters,
    ServiceDescriptor,
    address_of,
    normalize_address,
)
from .scan_controller import ScanController
from .session import SessionManager
from .subscriptions import CharacteristicSubscription, SubscriptionManager

logger = logging.getLogger(__name__)


class Inspector:
    """Facade over adapter monitor, scanner, sessions, discovery and subscriptions."""

    def __init__(self, backend: BLEBackendBase, config: BLEConfig | None = None):
        config = config or BLEConfig()
        self.backend = backend
        self.config = config
        self.adapter = AdapterMonitor(backend, poll_interval=config.adapter_poll_interval)
        self.sessions = SessionManager(backend, mtu=config.mtu)
        self.scanner = ScanController(
            backend,
            self.adapter,
            retain=self.sessions.is_connected,
            default_timeout=config.scan_timeout,
        )
        self.discovery = DiscoveryEngine(backend, self.sessions)
        self.subscriptions = SubscriptionManager(backend, self.sessions)

    @classmethod
    def from_config(cls, config: Config) -> "Inspector":
        backend = create_backend(config.ble.mode, adapter=config.ble.adapter)
        return cls(backend, config.ble)

    async def start(self) -> None:
        logger.info("Starting inspector (%s backend)", self.backend.mode.value)
        await self.adapter.start()

    async def stop(self) -> None:
        logger.info("Stopping inspector")
        try:
            await self.scanner.stop_scan()
        except StackFailure as e:
            logger.warning("Stopping scan during shutdown failed: %s", e)
        await self.sessions.disconnect_all()
        await self.adapter.stop()
        await self.backend.close()

    async def __aenter__(self) -> "Inspector":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # --- Scanning ---

    async def start_scan(
        self, timeout: float | None = None, filters: ScanFilters | None = None
    ) -> None:
        await self.scanner.start_scan(timeout, filters)

    async def stop_scan(self) -> None:
        await self.scanner.stop_scan()

    async def scan(
        self, timeout: float | None = None, filters: ScanFilters | None = None
    ) -> tuple[PeripheralHandle, ...]:
        return await self.scanner.scan(timeout, filters)

    def peripheral(self, address: str) -> PeripheralHandle | None:
        key = normalize_address(address)
        for peripheral in self.scanner.results.value:
            if peripheral.key == key:
                return peripheral
        return None

    # --- Sessions ---

    async def connect(
        self,
        peripheral: PeripheralHandle | str,
        auto_connect: bool = False,
        timeout: float | None = None,
    ) -> None:
        if isinstance(peripheral, str):
            peripheral = self.peripheral(peripheral) or peripheral
        timeout = self.config.connect_timeout if timeout is None else timeout
        await self.sessions.connect(peripheral, auto_connect=auto_connect, timeout=timeout)

    async def disconnect(self, peripheral: PeripheralHandle | str) -> None:
        await self.sessions.disconnect(peripheral)

    # --- Discovery ---

    async def discover_services(
        self, peripheral: PeripheralHandle | str, timeout: float | None = None
    ) -> list[ServiceDescriptor]:
        return await self.discovery.discover_services(peripheral, timeout=timeout)

    async def characteristic(
        self, peripheral: PeripheralHandle | str, specifier: str | int
    ) -> CharacteristicDescriptor:
        """Find a characteristic by UUID or handle, discovering services first if needed."""
        address = address_of(peripheral)
        if not self.sessions.is_connected(address):
            raise NotConnected(f"{address} is not connected")
        if self.discovery.current(address) is None:
            await self.discovery.discover_services(address)
        return self.discovery.find_characteristic(address, specifier)

    # --- Characteristic I/O ---

    async def subscribe(
        self,
        characteristic: CharacteristicDescriptor,
        callback: Callable[[CharacteristicSample], None],
    ) -> CharacteristicSubscription:
        return await self.subscriptions.subscribe(characteristic, callback)

    async def unsubscribe(self, subscription: CharacteristicSubscription) -> None:
        await self.subscriptions.unsubscribe(subscription)

    async def read_once(
        self, characteristic: CharacteristicDescriptor, timeout: float | None = None
    ) -> CharacteristicSample:
        return await self.subscriptions.read_once(characteristic, timeout=timeout)

    async def write(
        self,
        characteristic: CharacteristicDescriptor,
        data: bytes,
        with_response: bool = True,
        timeout: float | None = None,
    ) -> None:
        await self.subscriptions.write(
            characteristic, data, with_response=with_response, timeout=timeout
        )
