"""
Data model shared by the core components.

Descriptors are connection-scoped: each carries the `epoch` (connection
generation) of the peripheral it was discovered in. Once the peripheral
disconnects or reconnects the epoch moves on and the descriptor is stale.
"""
import time
from dataclasses import dataclass, field
from enum import Enum


class AdapterState(Enum):
    """Host radio power state"""
    UNKNOWN = "unknown"
    OFF = "off"
    ON = "on"
    TURNING_ON = "turningOn"
    TURNING_OFF = "turningOff"

    @property
    def usable(self) -> bool:
        # UNKNOWN is let through; the stack reports its own error if the radio is absent
        return self not in (AdapterState.OFF, AdapterState.TURNING_OFF)


class ConnectionStatus(Enum):
    """Connection states of one peripheral"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class Capability(Enum):
    READ = "read"
    WRITE = "write"
    NOTIFY = "notify"


# Stack property names mapped onto the capabilities blescope acts on
PROPERTY_CAPABILITIES = {
    "read": Capability.READ,
    "write": Capability.WRITE,
    "write-without-response": Capability.WRITE,
    "notify": Capability.NOTIFY,
    "indicate": Capability.NOTIFY,
}


def normalize_address(address: str) -> str:
    return address.strip().upper()


BLUETOOTH_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"


def normalize_uuid(uuid: str) -> str:
    """Lowercase full 128-bit form; 16- and 32-bit short UUIDs are expanded."""
    uuid = uuid.strip().lower()
    if uuid.startswith("0x"):
        uuid = uuid[2:]
    if len(uuid) == 4:
        return f"0000{uuid}{BLUETOOTH_BASE_UUID_SUFFIX}"
    if len(uuid) == 8:
        return f"{uuid}{BLUETOOTH_BASE_UUID_SUFFIX}"
    return uuid


@dataclass(frozen=True)
class PeripheralHandle:
    """A device seen while scanning"""
    address: str
    name: str = ""
    rssi: int = 0
    service_uuids: tuple[str, ...] = ()
    last_seen: float = field(default_factory=time.time, compare=False)

    @property
    def key(self) -> str:
        return normalize_address(self.address)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "name": self.name,
            "rssi": self.rssi,
            "service_uuids": list(self.service_uuids),
            "last_seen": self.last_seen,
        }


@dataclass(frozen=True)
class ScanFilters:
    """
    Conjunctive scan filters. An empty field places no constraint.

    names: advertised name must contain one of these (case-insensitive)
    addresses: device address allow-list
    service_uuids: at least one advertised service must be in this list
    """
    names: tuple[str, ...] = ()
    addresses: tuple[str, ...] = ()
    service_uuids: tuple[str, ...] = ()

    @classmethod
    def build(cls, names=None, addresses=None, service_uuids=None) -> "ScanFilters":
        return cls(
            names=tuple(n for n in (names or ()) if n),
            addresses=tuple(normalize_address(a) for a in (addresses or ()) if a),
            service_uuids=tuple(normalize_uuid(u) for u in (service_uuids or ()) if u),
        )

    def matches(self, peripheral: PeripheralHandle) -> bool:
        if self.names:
            name = (peripheral.name or "").lower()
            if not any(keyword.lower() in name for keyword in self.names):
                return False
        if self.addresses and peripheral.key not in self.addresses:
            return False
        if self.service_uuids:
            advertised = {normalize_uuid(u) for u in peripheral.service_uuids}
            if advertised.isdisjoint(self.service_uuids):
                return False
        return True


@dataclass(eq=False)
class CharacteristicDescriptor:
    """A characteristic of one connection's service tree"""
    uuid: str
    handle: int
    properties: tuple[str, ...]
    address: str
    epoch: int
    description: str = ""
    # Non-owning back-reference, set when the owning service is built
    service: "ServiceDescriptor | None" = field(default=None, repr=False)

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset(
            PROPERTY_CAPABILITIES[p] for p in self.properties if p in PROPERTY_CAPABILITIES
        )

    @property
    def readable(self) -> bool:
        return Capability.READ in self.capabilities

    @property
    def writable(self) -> bool:
        return Capability.WRITE in self.capabilities

    @property
    def notifiable(self) -> bool:
        return Capability.NOTIFY in self.capabilities

    @property
    def key(self) -> tuple[str, int]:
        return (normalize_address(self.address), self.handle)

    def to_dict(self) -> dict:
        return {
            "uuid": self.uuid,
            "handle": self.handle,
            "service_uuid": self.service.uuid if self.service else None,
            "description": self.description,
            "properties": list(self.properties),
            "readable": self.readable,
            "writable": self.writable,
            "notifiable": self.notifiable,
        }


@dataclass(eq=False)
class ServiceDescriptor:
    """A GATT service and its characteristics, valid for one connection"""
    uuid: str
    handle: int
    address: str
    epoch: int
    description: str = ""
    characteristics: tuple[CharacteristicDescriptor, ...] = ()

    def __post_init__(self):
        for characteristic in self.characteristics:
            characteristic.service = self

    def to_dict(self, actionable_only: bool = False) -> dict:
        chars = self.characteristics
        if actionable_only:
            chars = tuple(c for c in chars if c.capabilities)
        return {
            "uuid": self.uuid,
            "handle": self.handle,
            "description": self.description,
            "characteristics": [c.to_dict() for c in chars],
        }


@dataclass(frozen=True)
class CharacteristicSample:
    """Latest value of a characteristic; superseded, never accumulated"""
    value: bytes
    characteristic: CharacteristicDescriptor = field(compare=False)
    timestamp: float = field(default_factory=time.time)


def address_of(peripheral: "PeripheralHandle | str") -> str:
    """Accept a PeripheralHandle or a bare address."""
    if isinstance(peripheral, PeripheralHandle):
        return peripheral.address
    return peripheral
