"""Tests for the bleak backend's client bookkeeping."""
import pytest

from blescope import backend_bleak
from blescope.backend_bleak import BleakBackend
from blescope.models import ConnectionStatus
from blescope.session import SessionManager

from conftest import ADDRESS


class StubClient:
    """Stands in for BleakClient; fires its disconnect callback on demand."""

    instances: list["StubClient"] = []

    def __init__(self, device, disconnected_callback=None, **kwargs):
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.is_connected = False
        self.mtu_size = 247
        StubClient.instances.append(self)

    async def connect(self):
        self.is_connected = True

    async def disconnect(self):
        self.is_connected = False

    def link_lost(self):
        self.is_connected = False
        self.disconnected_callback(self)


@pytest.fixture
def clients(monkeypatch):
    StubClient.instances = []
    monkeypatch.setattr(backend_bleak, "BleakClient", StubClient)
    return StubClient.instances


class TestClientLifecycle:

    async def test_stale_client_disconnect_is_ignored(self, clients):
        backend = BleakBackend()
        lost = []
        await backend.connect(ADDRESS, lost.append)
        await backend.disconnect(ADDRESS)
        await backend.connect(ADDRESS, lost.append)
        old, new = clients

        # BlueZ reports the first link's end after the reconnect
        old.link_lost()

        assert lost == []
        assert backend._clients[ADDRESS] is new

    async def test_current_client_disconnect_is_forwarded(self, clients):
        backend = BleakBackend()
        lost = []
        await backend.connect(ADDRESS, lost.append)

        clients[0].link_lost()

        assert lost == [ADDRESS]
        assert ADDRESS not in backend._clients

    async def test_reconnected_session_survives_stale_callback(self, clients):
        sessions = SessionManager(BleakBackend())
        await sessions.connect(ADDRESS)
        await sessions.disconnect(ADDRESS)
        await sessions.connect(ADDRESS)

        clients[0].link_lost()

        assert sessions.status(ADDRESS) == ConnectionStatus.CONNECTED
        assert sessions.mtu(ADDRESS) == 247
