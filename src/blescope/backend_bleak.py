"""
bleak backend - host Bluetooth stack access.

One BleakScanner for discovery and one BleakClient per connected address.
On Linux the adapter power state is read from BlueZ over D-Bus; other
platforms report UNKNOWN and let the stack fail on use.
"""

import logging
import sys

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from .backend import (
    AdvertisementCallback,
    BackendMode,
    BLEBackendBase,
    DisconnectCallback,
    NotificationCallback,
)
from .models import (
    AdapterState,
    CharacteristicDescriptor,
    PeripheralHandle,
    ServiceDescriptor,
    normalize_address,
)

logger = logging.getLogger(__name__)

# DBus constants
BLUEZ_SERVICE_NAME = "org.bluez"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
DEFAULT_ADAPTER = "hci0"

# BlueZ Adapter1.PowerState values (BlueZ >= 5.66)
BLUEZ_POWER_STATES = {
    "on": AdapterState.ON,
    "off": AdapterState.OFF,
    "off-enabling": AdapterState.TURNING_ON,
    "on-disabling": AdapterState.TURNING_OFF,
    "off-blocked": AdapterState.OFF,
}


class BleakBackend(BLEBackendBase):
    """Backend driving the host stack through bleak."""

    mode = BackendMode.BLEAK

    def __init__(self, adapter: str | None = None):
        self.adapter = adapter
        self._scanner: BleakScanner | None = None
        self._clients: dict[str, BleakClient] = {}
        # Last BLEDevice seen per address; connecting with it skips a second scan
        self._seen: dict[str, BLEDevice] = {}
        self._bus = None

    def _stack_kwargs(self) -> dict:
        return {"adapter": self.adapter} if self.adapter else {}

    def _client(self, address: str) -> BleakClient:
        client = self._clients.get(normalize_address(address))
        if client is None or not client.is_connected:
            raise RuntimeError(f"No active link to {address}")
        return client

    # --- Adapter ---

    async def adapter_state(self) -> AdapterState:
        if not sys.platform.startswith("linux"):
            return AdapterState.UNKNOWN
        try:
            return await self._bluez_adapter_state()
        except Exception as e:
            logger.debug("BlueZ adapter state unavailable: %s", e)
            self._bus = None
            return AdapterState.UNKNOWN

    async def _bluez_adapter_state(self) -> AdapterState:
        from dbus_next.aio import MessageBus
        from dbus_next.constants import BusType
        from dbus_next.errors import DBusError

        if self._bus is None:
            self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()

        path = f"/org/bluez/{self.adapter or DEFAULT_ADAPTER}"
        introspection = await self._bus.introspect(BLUEZ_SERVICE_NAME, path)
        adapter_obj = self._bus.get_proxy_object(BLUEZ_SERVICE_NAME, path, introspection)
        props_iface = adapter_obj.get_interface(PROPERTIES_INTERFACE)

        try:
            power_state = (await props_iface.call_get(ADAPTER_INTERFACE, "PowerState")).value
            return BLUEZ_POWER_STATES.get(power_state, AdapterState.UNKNOWN)
        except DBusError:
            # Older BlueZ only has the boolean
            powered = (await props_iface.call_get(ADAPTER_INTERFACE, "Powered")).value
            return AdapterState.ON if powered else AdapterState.OFF

    # --- Scanning ---

    async def start_scan(
        self, callback: AdvertisementCallback, service_uuids: list[str] | None = None
    ) -> None:
        if self._scanner is not None:
            await self.stop_scan()

        def detection_callback(device: BLEDevice, advertisement: AdvertisementData):
            self._seen[normalize_address(device.address)] = device
            callback(PeripheralHandle(
                address=device.address,
                name=advertisement.local_name or device.name or "",
                rssi=advertisement.rssi,
                service_uuids=tuple(advertisement.service_uuids or ()),
            ))

        self._scanner = BleakScanner(
            detection_callback=detection_callback,
            service_uuids=service_uuids or None,
            **self._stack_kwargs(),
        )
        await self._scanner.start()
        logger.debug("📡 bleak scanner started")

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await scanner.stop()
            logger.debug("bleak scanner stopped")

    # --- Connection ---

    async def connect(
        self,
        address: str,
        disconnected_callback: DisconnectCallback,
        auto_connect: bool = False,
    ) -> None:
        key = normalize_address(address)
        if auto_connect:
            logger.debug("auto_connect is not supported by bleak on this platform, ignored")

        def on_disconnect(stack_client: BleakClient):
            if self._clients.get(key) is not stack_client:
                # Link of a client that was already replaced or torn down
                logger.debug("Ignoring disconnect of stale client for %s", address)
                return
            del self._clients[key]
            disconnected_callback(address)

        client = BleakClient(
            self._seen.get(key, address),
            disconnected_callback=on_disconnect,
            **self._stack_kwargs(),
        )
        self._clients[key] = client
        try:
            await client.connect()
        except BaseException:
            self._clients.pop(key, None)
            raise

    async def disconnect(self, address: str) -> None:
        client = self._clients.pop(normalize_address(address), None)
        if client is not None:
            await client.disconnect()

    async def request_mtu(self, address: str, mtu: int) -> int:
        client = self._client(address)
        # BlueZ only learns the negotiated MTU after an explicit acquire;
        # CoreBluetooth and WinRT negotiate on connect.
        acquire = getattr(getattr(client, "_backend", None), "_acquire_mtu", None)
        if acquire is not None:
            await acquire()
        granted = client.mtu_size
        if granted != mtu:
            logger.debug("Stack granted MTU %d (requested %d)", granted, mtu)
        return granted

    # --- GATT ---

    async def get_services(self, address: str, epoch: int) -> list[ServiceDescriptor]:
        client = self._client(address)
        services = []
        for service in client.services:
            characteristics = tuple(
                CharacteristicDescriptor(
                    uuid=char.uuid,
                    handle=char.handle,
                    properties=tuple(char.properties),
                    address=address,
                    epoch=epoch,
                    description=char.description or "",
                )
                for char in service.characteristics
            )
            services.append(ServiceDescriptor(
                uuid=service.uuid,
                handle=service.handle,
                address=address,
                epoch=epoch,
                description=service.description or "",
                characteristics=characteristics,
            ))
        return services

    async def read(self, address: str, handle: int) -> bytes:
        data = await self._client(address).read_gatt_char(handle)
        return bytes(data)

    async def write(
        self, address: str, handle: int, data: bytes, with_response: bool = True
    ) -> None:
        await self._client(address).write_gatt_char(handle, data, response=with_response)

    async def start_notify(
        self, address: str, handle: int, callback: NotificationCallback
    ) -> None:
        def notification_handler(_sender, data: bytearray):
            callback(bytes(data))

        await self._client(address).start_notify(handle, notification_handler)

    async def stop_notify(self, address: str, handle: int) -> None:
        await self._client(address).stop_notify(handle)

    async def close(self) -> None:
        await self.stop_scan()
        for key, client in list(self._clients.items()):
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("Disconnect of %s during close failed: %s", key, e)
        self._clients.clear()
        if self._bus is not None:
            self._bus.disconnect()
            self._bus = None
