"""Tests for the inspector facade."""
import asyncio

import pytest

from blescope.backend_disabled import DisabledBackend
from blescope.config_loader import Config
from blescope.errors import NotConnected, OperationTimeout
from blescope.inspector import Inspector
from blescope.models import AdapterState

from conftest import ADDRESS


class TestInspector:

    async def test_from_config_disabled(self, tmp_path):
        cfg = Config.load(tmp_path / "missing.json")
        cfg.ble.mode = "disabled"

        async with Inspector.from_config(cfg) as inspector:
            assert isinstance(inspector.backend, DisabledBackend)
            assert inspector.adapter.current == AdapterState.OFF

    async def test_connect_uses_scanned_name(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        backend.advertise(ADDRESS, "SensorA")
        await inspector.stop_scan()

        await inspector.connect(ADDRESS.lower())
        assert inspector.peripheral(ADDRESS).name == "SensorA"
        assert inspector.sessions.describe(ADDRESS)["name"] == "SensorA"

    async def test_connect_uses_configured_timeout(self, inspector, backend, config):
        config.connect_timeout = 0.01
        backend.gates["connect"] = asyncio.Event()

        with pytest.raises(OperationTimeout):
            await inspector.connect(ADDRESS)

    async def test_characteristic_requires_connection(self, inspector):
        with pytest.raises(NotConnected):
            await inspector.characteristic(ADDRESS, "2a19")

    async def test_stop_disconnects_everything(self, connected, backend):
        await connected.start_scan(timeout=10)
        await connected.stop()

        assert backend.connected == set()
        assert not connected.scanner.scanning
