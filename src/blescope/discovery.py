"""Discovery Engine - GATT service enumeration for connected peripherals."""

import asyncio
import logging
from collections.abc import Iterable

from .backend import BLEBackendBase
from .errors import NotConnected, OperationTimeout, StackFailure, UnknownCharacteristic
from .models import (
    CharacteristicDescriptor,
    PeripheralHandle,
    ServiceDescriptor,
    address_of,
    normalize_address,
    normalize_uuid,
)
from .session import SessionManager

logger = logging.getLogger(__name__)


def actionable(services: Iterable[ServiceDescriptor]) -> list[CharacteristicDescriptor]:
    """Characteristics with at least one of read/write/notify."""
    return [c for s in services for c in s.characteristics if c.capabilities]


class DiscoveryEngine:
    """
    Enumerates services and characteristics.

    Every discover_services() call re-queries the stack. The tree from the
    last call is kept only for characteristic look-ups and is dropped when
    the connection ends.
    """

    def __init__(self, backend: BLEBackendBase, sessions: SessionManager):
        self.backend = backend
        self.sessions = sessions
        self._trees: dict[str, list[ServiceDescriptor]] = {}
        sessions.add_teardown_listener(self._on_teardown)

    async def discover_services(
        self, peripheral: PeripheralHandle | str, timeout: float | None = None
    ) -> list[ServiceDescriptor]:
        """
        Query the full service/characteristic tree.

        Raises:
            NotConnected: peripheral not connected, or it disconnected
                          while the query was in flight
            OperationTimeout: `timeout` expired
            StackFailure: the stack failed the query
        """
        address = address_of(peripheral)
        if not self.sessions.is_connected(address):
            raise NotConnected(f"{address} is not connected")
        epoch = self.sessions.epoch(address)

        try:
            query = self.backend.get_services(address, epoch)
            if timeout is not None:
                services = await asyncio.wait_for(query, timeout=timeout)
            else:
                services = await query
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"Service discovery on {address} timed out") from e
        except Exception as e:
            if not self.sessions.is_current(address, epoch):
                raise NotConnected(f"{address} disconnected during discovery") from e
            logger.error("Error discovering services on %s: %s", address, e)
            raise StackFailure.wrap(f"discover services on {address}", e) from e

        if not self.sessions.is_current(address, epoch):
            raise NotConnected(f"{address} disconnected during discovery")

        self._trees[normalize_address(address)] = services
        logger.info(
            "Discovered %d service(s), %d characteristic(s) on %s",
            len(services), sum(len(s.characteristics) for s in services), address,
        )
        return services

    def current(self, peripheral: PeripheralHandle | str) -> list[ServiceDescriptor] | None:
        """Tree from the last discovery of the live connection, if any."""
        address = address_of(peripheral)
        services = self._trees.get(normalize_address(address))
        if services and not self.sessions.is_current(address, services[0].epoch):
            return None
        return services

    def find_characteristic(
        self, peripheral: PeripheralHandle | str, specifier: str | int
    ) -> CharacteristicDescriptor:
        """
        Look a characteristic up by UUID or handle in the current tree.

        Raises:
            NotConnected: no tree for the live connection
            UnknownCharacteristic: nothing matches
        """
        address = address_of(peripheral)
        services = self.current(address)
        if services is None:
            raise NotConnected(f"No discovered services for {address}")

        handle = None
        if isinstance(specifier, int):
            handle = specifier
        elif specifier.isdigit():
            handle = int(specifier)

        for service in services:
            for characteristic in service.characteristics:
                if handle is not None:
                    if characteristic.handle == handle:
                        return characteristic
                elif normalize_uuid(characteristic.uuid) == normalize_uuid(specifier):
                    return characteristic
        raise UnknownCharacteristic(f"No characteristic {specifier} on {address}")

    def _on_teardown(self, address: str) -> None:
        self._trees.pop(normalize_address(address), None)
