"""Tests for scanning: deduplication, filters, timeout and session rules."""
import asyncio

import pytest

from blescope.errors import AdapterUnavailable, ScanAlreadyActive, StackFailure
from blescope.models import AdapterState, PeripheralHandle, ScanFilters

from conftest import ADDRESS, OTHER_ADDRESS, UART_SERVICE


class TestScanResults:
    """Result list shape after advertisement sequences."""

    async def test_one_entry_per_address_with_latest_values(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        backend.advertise(ADDRESS, "SensorA", -70)
        backend.advertise(OTHER_ADDRESS, "SensorB", -50)
        backend.advertise(ADDRESS, "SensorA2", -40)
        backend.advertise(ADDRESS.lower(), "SensorA2", -42)

        results = inspector.scanner.results.value
        assert [p.key for p in results] == [ADDRESS, OTHER_ADDRESS]
        assert results[0].name == "SensorA2"
        assert results[0].rssi == -42
        await inspector.stop_scan()

    async def test_unchanged_advert_does_not_republish(self, inspector, backend):
        published = []
        inspector.scanner.results.subscribe(published.append, replay=False)
        await inspector.start_scan(timeout=10)
        backend.advertise(ADDRESS, "SensorA", -70)
        backend.advertise(ADDRESS, "SensorA", -70)

        # one for the session reset, one for the first sighting
        assert len(published) == 2
        await inspector.stop_scan()

    async def test_nameless_advert_keeps_known_name(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        backend.advertise(ADDRESS, "SensorA", -70)
        backend.advertise(ADDRESS, "", -65)

        (entry,) = inspector.scanner.results.value
        assert entry.name == "SensorA"
        assert entry.rssi == -65
        await inspector.stop_scan()

    async def test_results_are_immutable_snapshots(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        backend.advertise(ADDRESS, "SensorA")
        snapshot = inspector.scanner.results.value
        backend.advertise(OTHER_ADDRESS, "SensorB")

        assert isinstance(snapshot, tuple)
        assert len(snapshot) == 1
        assert len(inspector.scanner.results.value) == 2
        await inspector.stop_scan()

    async def test_adverts_after_stop_are_ignored(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        callback = backend.scan_callback
        await inspector.stop_scan()

        callback(PeripheralHandle(address=ADDRESS, name="Late"))
        assert inspector.scanner.results.value == ()


class TestScanFilters:
    """Filters are conjunctive; an empty field places no constraint."""

    async def test_name_filter(self, inspector, backend):
        await inspector.start_scan(timeout=10, filters=ScanFilters.build(names=["Sensor"]))
        backend.advertise(ADDRESS, "OtherDevice")
        backend.advertise(OTHER_ADDRESS, "SensorA")

        assert [p.name for p in inspector.scanner.results.value] == ["SensorA"]
        await inspector.stop_scan()

    async def test_name_filter_keeps_entry_on_nameless_advert(self, inspector, backend):
        await inspector.start_scan(timeout=10, filters=ScanFilters.build(names=["Sensor"]))
        backend.advertise(ADDRESS, "SensorA", -70)
        backend.advertise(ADDRESS, "", -50)
        backend.advertise(OTHER_ADDRESS, "", -40)

        (entry,) = inspector.scanner.results.value
        assert entry.name == "SensorA"
        assert entry.rssi == -50
        await inspector.stop_scan()

    def test_name_filter_is_case_insensitive(self):
        filters = ScanFilters.build(names=["sensor"])

        assert filters.matches(PeripheralHandle(address=ADDRESS, name="MySENSOR"))
        assert not filters.matches(PeripheralHandle(address=ADDRESS, name=""))

    async def test_address_and_service_filters_combine(self, inspector, backend):
        filters = ScanFilters.build(
            addresses=[ADDRESS.lower()], service_uuids=[UART_SERVICE.upper()]
        )
        await inspector.start_scan(timeout=10, filters=filters)
        backend.advertise(ADDRESS, "A", service_uuids=["180f"])
        backend.advertise(OTHER_ADDRESS, "B", service_uuids=[UART_SERVICE])
        assert inspector.scanner.results.value == ()

        backend.advertise(ADDRESS, "A", service_uuids=[UART_SERVICE])
        assert [p.address for p in inspector.scanner.results.value] == [ADDRESS]
        await inspector.stop_scan()

    async def test_service_filter_is_passed_to_stack(self, inspector, backend):
        await inspector.start_scan(timeout=10, filters=ScanFilters.build(service_uuids=["180F"]))
        assert backend.calls[0] == (
            "start_scan", ("0000180f-0000-1000-8000-00805f9b34fb",)
        )
        await inspector.stop_scan()


class TestScanLifecycle:
    """Start/stop rules, timeout and failure handling."""

    async def test_scan_stops_after_timeout(self, inspector, backend):
        async def advertise_soon():
            await asyncio.sleep(0.01)
            backend.advertise(ADDRESS, "SensorA")

        task = asyncio.create_task(advertise_soon())
        found = await inspector.scan(timeout=0.05)
        await task

        assert [p.address for p in found] == [ADDRESS]
        assert not inspector.scanner.scanning
        assert inspector.scanner.is_scanning.value is False
        assert backend.count("stop_scan") == 1

    async def test_is_scanning_transitions(self, inspector):
        seen = []
        inspector.scanner.is_scanning.subscribe(seen.append)
        await inspector.start_scan(timeout=10)
        await inspector.stop_scan()

        assert seen == [False, True, False]

    async def test_double_start_is_rejected(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        with pytest.raises(ScanAlreadyActive):
            await inspector.start_scan(timeout=10)

        assert backend.count("start_scan") == 1
        await inspector.stop_scan()

    async def test_stop_when_idle_is_noop(self, inspector, backend):
        await inspector.stop_scan()
        assert backend.count("stop_scan") == 0

    async def test_adapter_off_rejects_scan(self, inspector, backend):
        backend.state = AdapterState.OFF
        with pytest.raises(AdapterUnavailable):
            await inspector.start_scan()

        assert backend.count("start_scan") == 0
        assert inspector.adapter.current == AdapterState.OFF

    async def test_stack_refusal_is_wrapped(self, inspector, backend):
        backend.fail["start_scan"] = RuntimeError("org.bluez.Error.InProgress")
        with pytest.raises(StackFailure) as excinfo:
            await inspector.start_scan()

        assert "InProgress" in str(excinfo.value)
        assert not inspector.scanner.scanning
        # the controller is usable again
        await inspector.start_scan(timeout=10)
        await inspector.stop_scan()

    async def test_stop_failure_still_ends_session(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        backend.fail["stop_scan"] = RuntimeError("adapter gone")
        with pytest.raises(StackFailure):
            await inspector.stop_scan()

        assert inspector.scanner.is_scanning.value is False

    async def test_new_session_keeps_only_connected_peripherals(self, inspector, backend):
        await inspector.start_scan(timeout=10)
        backend.advertise(ADDRESS, "SensorA")
        backend.advertise(OTHER_ADDRESS, "SensorB")
        await inspector.stop_scan()
        await inspector.connect(ADDRESS)

        await inspector.start_scan(timeout=10)
        assert [p.address for p in inspector.scanner.results.value] == [ADDRESS]
        await inspector.stop_scan()
