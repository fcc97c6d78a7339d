"""
Disabled backend - no radio.

Useful for running the service or the CLI on machines without Bluetooth:
the adapter reports OFF so scans fail with AdapterUnavailable, and any
call that would need a link fails.
"""

import logging

from .backend import (
    AdvertisementCallback,
    BackendMode,
    BLEBackendBase,
    DisconnectCallback,
    NotificationCallback,
)
from .models import AdapterState, ServiceDescriptor

logger = logging.getLogger(__name__)


class DisabledBackend(BLEBackendBase):
    """Backend whose adapter is permanently off."""

    mode = BackendMode.DISABLED

    async def adapter_state(self) -> AdapterState:
        return AdapterState.OFF

    async def start_scan(
        self, callback: AdvertisementCallback, service_uuids: list[str] | None = None
    ) -> None:
        raise RuntimeError("BLE disabled - scanning not available")

    async def stop_scan(self) -> None:
        logger.debug("BLE disabled - stop scan skipped")

    async def connect(
        self,
        address: str,
        disconnected_callback: DisconnectCallback,
        auto_connect: bool = False,
    ) -> None:
        raise RuntimeError(f"BLE disabled - cannot connect to {address}")

    async def disconnect(self, address: str) -> None:
        logger.debug("BLE disabled - disconnect %s skipped", address)

    async def request_mtu(self, address: str, mtu: int) -> int:
        raise RuntimeError("BLE disabled - no link")

    async def get_services(self, address: str, epoch: int) -> list[ServiceDescriptor]:
        raise RuntimeError("BLE disabled - no link")

    async def read(self, address: str, handle: int) -> bytes:
        raise RuntimeError("BLE disabled - no link")

    async def write(
        self, address: str, handle: int, data: bytes, with_response: bool = True
    ) -> None:
        raise RuntimeError("BLE disabled - no link")

    async def start_notify(
        self, address: str, handle: int, callback: NotificationCallback
    ) -> None:
        raise RuntimeError("BLE disabled - no link")

    async def stop_notify(self, address: str, handle: int) -> None:
        logger.debug("BLE disabled - stop notify skipped")
