"""Tests for adapter state observation."""
import asyncio

from blescope.adapter_monitor import AdapterMonitor
from blescope.models import AdapterState


class TestAdapterMonitor:

    async def test_publishes_changes_only(self, backend):
        monitor = AdapterMonitor(backend)
        seen = []
        monitor.state.subscribe(seen.append)

        await monitor.refresh()
        await monitor.refresh()
        backend.state = AdapterState.OFF
        await monitor.refresh()

        assert seen == [AdapterState.UNKNOWN, AdapterState.ON, AdapterState.OFF]

    async def test_query_failure_reports_unknown(self, backend):
        monitor = AdapterMonitor(backend)
        await monitor.refresh()

        async def broken():
            raise RuntimeError("bus gone")

        backend.adapter_state = broken
        assert await monitor.refresh() == AdapterState.UNKNOWN
        assert monitor.current == AdapterState.UNKNOWN

    async def test_poll_loop(self, backend):
        monitor = AdapterMonitor(backend, poll_interval=0.01)
        await monitor.start()
        assert monitor.current == AdapterState.ON

        backend.state = AdapterState.TURNING_OFF
        await asyncio.sleep(0.05)
        assert monitor.current == AdapterState.TURNING_OFF
        assert not monitor.current.usable

        await monitor.stop()

    def test_usable_states(self):
        assert AdapterState.ON.usable
        assert AdapterState.UNKNOWN.usable
        assert not AdapterState.OFF.usable
        assert AdapterState.TURNING_ON.value == "turningOn"
