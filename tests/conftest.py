"""Shared fixtures: an in-memory Bluetooth stack and wired-up components."""
import asyncio

import pytest

from blescope.backend import BackendMode, BLEBackendBase
from blescope.config_loader import BLEConfig
from blescope.inspector import Inspector
from blescope.models import (
    AdapterState,
    CharacteristicDescriptor,
    PeripheralHandle,
    ServiceDescriptor,
)

ADDRESS = "AA:BB:CC:DD:EE:01"
OTHER_ADDRESS = "AA:BB:CC:DD:EE:02"

BATTERY_SERVICE = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL = "00002a19-0000-1000-8000-00805f9b34fb"
UART_SERVICE = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
UART_RX = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
UART_TX = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"
UART_CMD = "6e400004-b5a3-f393-e0a9-e50e24dcca9e"
DEVICE_NAME = "00002a00-0000-1000-8000-00805f9b34fb"

# (service uuid, handle, [(characteristic uuid, handle, properties)])
DEFAULT_GATT = [
    (BATTERY_SERVICE, 1, [(BATTERY_LEVEL, 3, ("read", "notify"))]),
    (UART_SERVICE, 10, [
        (UART_RX, 12, ("write", "write-without-response")),
        (UART_TX, 14, ("notify",)),
        (UART_CMD, 16, ("write-without-response",)),
        (DEVICE_NAME, 18, ("broadcast",)),
    ]),
]


class FakeBackend(BLEBackendBase):
    """
    In-memory stack. Records every call in `calls`; `fail[op]` makes the
    next call of `op` raise; `gates[op]` holds `op` until the event is set.
    """

    mode = BackendMode.DISABLED

    def __init__(self):
        self.state = AdapterState.ON
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.gatt = DEFAULT_GATT
        self.values: dict[int, bytes] = {3: b"\x64"}
        self.written: list[tuple[int, bytes, bool]] = []
        self.granted_mtu = 185
        self.scanning = False
        self.scan_callback = None
        self.connected: set[str] = set()
        self.disconnect_callbacks: dict[str, object] = {}
        self.notify_callbacks: dict[tuple[str, int], object] = {}

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    async def _enter(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self.fail.pop(op, None)
        if error is not None:
            raise error

    # --- BLEBackendBase ---

    async def adapter_state(self) -> AdapterState:
        return self.state

    async def start_scan(self, callback, service_uuids=None) -> None:
        await self._enter("start_scan", tuple(service_uuids or ()))
        self.scanning = True
        self.scan_callback = callback

    async def stop_scan(self) -> None:
        await self._enter("stop_scan")
        self.scanning = False
        self.scan_callback = None

    async def connect(self, address, disconnected_callback, auto_connect=False) -> None:
        await self._enter("connect", address)
        self.connected.add(address)
        self.disconnect_callbacks[address] = disconnected_callback

    async def disconnect(self, address) -> None:
        await self._enter("disconnect", address)
        self.connected.discard(address)
        callback = self.disconnect_callbacks.pop(address, None)
        if callback:
            callback(address)

    async def request_mtu(self, address, mtu) -> int:
        await self._enter("request_mtu", address, mtu)
        return self.granted_mtu

    async def get_services(self, address, epoch) -> list[ServiceDescriptor]:
        await self._enter("get_services", address)
        return [
            ServiceDescriptor(
                uuid=service_uuid,
                handle=service_handle,
                address=address,
                epoch=epoch,
                characteristics=tuple(
                    CharacteristicDescriptor(
                        uuid=uuid, handle=handle, properties=props, address=address, epoch=epoch
                    )
                    for uuid, handle, props in chars
                ),
            )
            for service_uuid, service_handle, chars in self.gatt
        ]

    async def read(self, address, handle) -> bytes:
        await self._enter("read", address, handle)
        return self.values.get(handle, b"")

    async def write(self, address, handle, data, with_response=True) -> None:
        await self._enter("write", address, handle)
        self.written.append((handle, data, with_response))

    async def start_notify(self, address, handle, callback) -> None:
        await self._enter("start_notify", address, handle)
        self.notify_callbacks[(address, handle)] = callback

    async def stop_notify(self, address, handle) -> None:
        await self._enter("stop_notify", address, handle)
        self.notify_callbacks.pop((address, handle), None)

    # --- Test controls ---

    def advertise(self, address, name="", rssi=-60, service_uuids=()) -> None:
        assert self.scan_callback is not None, "not scanning"
        self.scan_callback(PeripheralHandle(
            address=address, name=name, rssi=rssi, service_uuids=tuple(service_uuids)
        ))

    def notify(self, address, handle, data: bytes) -> None:
        self.notify_callbacks[(address, handle)](data)

    def drop(self, address) -> None:
        """The link goes away without anyone asking."""
        self.connected.discard(address)
        self.disconnect_callbacks.pop(address)(address)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def config():
    return BLEConfig(mode="disabled", scan_timeout=0.05, connect_timeout=1.0, adapter_poll_interval=0.05)


@pytest.fixture
def inspector(backend, config):
    return Inspector(backend, config)


@pytest.fixture
async def connected(inspector):
    """Inspector connected to ADDRESS with its services discovered."""
    await inspector.connect(ADDRESS)
    await inspector.discover_services(ADDRESS)
    return inspector
