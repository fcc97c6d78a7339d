"""
Bluetooth stack abstraction layer.

Every call that crosses into the host Bluetooth stack goes through a
backend, so the core can run against real hardware (bleak) or without a
radio at all (disabled, and the in-memory fake used by the tests).

Backends raise the stack's own exceptions; translating them into
blescope errors is the core's job.

Usage:
    from blescope.backend import create_backend, BackendMode

    backend = create_backend(BackendMode.BLEAK, adapter="hci0")
    await backend.start_scan(on_advertisement, service_uuids=[])
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

from .models import AdapterState, PeripheralHandle, ServiceDescriptor

logger = logging.getLogger(__name__)

AdvertisementCallback = Callable[[PeripheralHandle], None]
DisconnectCallback = Callable[[str], None]
NotificationCallback = Callable[[bytes], None]


class BackendMode(Enum):
    """Bluetooth stack backends"""
    BLEAK = "bleak"          # Host stack via bleak (BlueZ, CoreBluetooth, WinRT)
    DISABLED = "disabled"    # No radio; adapter reports OFF


class BLEBackendBase(ABC):
    """
    Abstract base class for Bluetooth stack backends.

    Addresses passed in are the ones reported by the backend's own
    advertisements. Characteristics are addressed by their GATT handle,
    which is unique within one connection.
    """

    mode: BackendMode

    @abstractmethod
    async def adapter_state(self) -> AdapterState:
        """Current power state of the host radio."""

    @abstractmethod
    async def start_scan(
        self, callback: AdvertisementCallback, service_uuids: list[str] | None = None
    ) -> None:
        """
        Start discovery. `callback` runs on the event loop for every advertisement.

        Args:
            callback: Receives one PeripheralHandle per advertisement
            service_uuids: Optional hint; the stack may filter on these
        """

    @abstractmethod
    async def stop_scan(self) -> None:
        """Stop discovery. Must be safe to call when not scanning."""

    @abstractmethod
    async def connect(
        self,
        address: str,
        disconnected_callback: DisconnectCallback,
        auto_connect: bool = False,
    ) -> None:
        """
        Connect and return once the stack reports the link as connected.

        `disconnected_callback(address)` runs whenever the link drops,
        including after an explicit disconnect().
        """

    @abstractmethod
    async def disconnect(self, address: str) -> None:
        """Tear the link down."""

    @abstractmethod
    async def request_mtu(self, address: str, mtu: int) -> int:
        """Ask for `mtu`; returns the MTU the stack actually granted."""

    @abstractmethod
    async def get_services(self, address: str, epoch: int) -> list[ServiceDescriptor]:
        """Query the GATT tree, tagging descriptors with the connection epoch."""

    @abstractmethod
    async def read(self, address: str, handle: int) -> bytes:
        """Read a characteristic value."""

    @abstractmethod
    async def write(
        self, address: str, handle: int, data: bytes, with_response: bool = True
    ) -> None:
        """Write a characteristic value."""

    @abstractmethod
    async def start_notify(
        self, address: str, handle: int, callback: NotificationCallback
    ) -> None:
        """Enable notifications/indications; `callback` receives raw values."""

    @abstractmethod
    async def stop_notify(self, address: str, handle: int) -> None:
        """Disable notifications/indications."""

    async def close(self) -> None:
        """Release stack resources (scanner, clients, bus connections)."""


def create_backend(
    mode: BackendMode | str = BackendMode.BLEAK,
    adapter: str | None = None,
) -> BLEBackendBase:
    """
    Factory function to create the backend for a mode.

    Args:
        mode: Backend mode (enum or its string value)
        adapter: Host adapter name (e.g. "hci0"), bleak only

    Returns:
        Configured backend instance
    """
    mode = BackendMode(mode)

    if mode == BackendMode.BLEAK:
        from .backend_bleak import BleakBackend
        backend = BleakBackend(adapter=adapter)
        logger.info("Created bleak backend (adapter=%s)", adapter or "default")

    else:  # DISABLED
        from .backend_disabled import DisabledBackend
        backend = DisabledBackend()
        logger.info("Created disabled backend (no-op)")

    return backend
