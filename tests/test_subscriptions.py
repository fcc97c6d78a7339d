"""Tests for notification multiplexing, reads and writes."""
import asyncio

import pytest

from blescope.errors import (
    NotConnected,
    NotNotifiable,
    NotReadable,
    NotWritable,
    OperationTimeout,
    StackFailure,
)

from conftest import ADDRESS, BATTERY_LEVEL, DEVICE_NAME, UART_CMD, UART_RX, UART_TX


async def _char(inspector, specifier):
    return await inspector.characteristic(ADDRESS, specifier)


class TestNotifications:
    """Shared registrations and their lifetime."""

    async def test_two_observers_share_one_registration(self, connected, backend):
        tx = await _char(connected, UART_TX)
        first, second = [], []

        sub_a = await connected.subscribe(tx, first.append)
        sub_b = await connected.subscribe(tx, second.append)
        assert backend.count("start_notify") == 1
        assert connected.subscriptions.subscriber_count(tx) == 2

        backend.notify(ADDRESS, 14, b"one")
        await connected.unsubscribe(sub_a)
        backend.notify(ADDRESS, 14, b"two")

        assert [s.value for s in first] == [b"one"]
        assert [s.value for s in second] == [b"one", b"two"]
        assert backend.count("stop_notify") == 0
        assert sub_b.active and not sub_a.active

        await sub_b.close()
        assert backend.count("stop_notify") == 1

    async def test_unsubscribe_is_idempotent(self, connected, backend):
        tx = await _char(connected, UART_TX)
        subscription = await connected.subscribe(tx, lambda sample: None)

        await connected.unsubscribe(subscription)
        await connected.unsubscribe(subscription)
        assert backend.count("stop_notify") == 1

    async def test_late_observer_gets_latest_sample(self, connected, backend):
        tx = await _char(connected, UART_TX)
        await connected.subscribe(tx, lambda sample: None)
        backend.notify(ADDRESS, 14, b'{"t":21}')

        late = []
        subscription = await connected.subscribe(tx, late.append)
        assert [s.value for s in late] == [b'{"t":21}']
        assert subscription.latest.value == b'{"t":21}'
        assert connected.subscriptions.latest(tx).value == b'{"t":21}'

    async def test_disconnect_stops_samples(self, connected, backend):
        tx = await _char(connected, UART_TX)
        received = []
        subscription = await connected.subscribe(tx, received.append)
        callback = backend.notify_callbacks[(ADDRESS, 14)]
        backend.notify(ADDRESS, 14, b"before")

        await connected.disconnect(ADDRESS)
        callback(b"after")

        assert [s.value for s in received] == [b"before"]
        assert not subscription.active
        assert connected.subscriptions.latest(tx) is None
        # stack registration died with the link, nothing to stop
        await connected.unsubscribe(subscription)
        assert backend.count("stop_notify") == 0

    async def test_link_loss_stops_samples(self, connected, backend):
        tx = await _char(connected, UART_TX)
        received = []
        await connected.subscribe(tx, received.append)
        callback = backend.notify_callbacks[(ADDRESS, 14)]

        backend.drop(ADDRESS)
        callback(b"late")

        assert received == []
        assert connected.subscriptions.subscriber_count(tx) == 0

    async def test_stale_descriptor_rejected_after_reconnect(self, connected, backend):
        tx = await _char(connected, UART_TX)
        await connected.disconnect(ADDRESS)
        await connected.connect(ADDRESS)

        with pytest.raises(NotConnected):
            await connected.subscribe(tx, lambda sample: None)
        assert backend.count("start_notify") == 0

        fresh = await _char(connected, UART_TX)
        assert fresh is not tx
        await connected.subscribe(fresh, lambda sample: None)
        assert backend.count("start_notify") == 1

    async def test_not_notifiable(self, connected, backend):
        rx = await _char(connected, UART_RX)
        with pytest.raises(NotNotifiable):
            await connected.subscribe(rx, lambda sample: None)
        assert backend.count("start_notify") == 0

    async def test_registration_failure(self, connected, backend):
        tx = await _char(connected, UART_TX)
        backend.fail["start_notify"] = RuntimeError("CCCD write failed")

        with pytest.raises(StackFailure):
            await connected.subscribe(tx, lambda sample: None)
        assert connected.subscriptions.subscriber_count(tx) == 0

        # next attempt registers again
        await connected.subscribe(tx, lambda sample: None)
        assert backend.count("start_notify") == 2

    async def test_concurrent_subscribers_wait_for_registration(self, connected, backend):
        tx = await _char(connected, UART_TX)
        backend.gates["start_notify"] = asyncio.Event()
        first = asyncio.create_task(connected.subscribe(tx, lambda sample: None))
        second = asyncio.create_task(connected.subscribe(tx, lambda sample: None))
        await asyncio.sleep(0)

        backend.gates["start_notify"].set()
        await asyncio.gather(first, second)
        assert backend.count("start_notify") == 1
        assert connected.subscriptions.subscriber_count(tx) == 2

    async def test_resubscribe_waits_for_pending_release(self, connected, backend):
        tx = await _char(connected, UART_TX)
        subscription = await connected.subscribe(tx, lambda sample: None)
        backend.gates["stop_notify"] = asyncio.Event()
        releasing = asyncio.create_task(connected.unsubscribe(subscription))
        await asyncio.sleep(0)

        received = []
        resubscribing = asyncio.create_task(connected.subscribe(tx, received.append))
        await asyncio.sleep(0)
        assert backend.count("start_notify") == 1

        backend.gates["stop_notify"].set()
        await releasing
        await resubscribing

        assert [call[0] for call in backend.calls if "notify" in call[0]] == [
            "start_notify", "stop_notify", "start_notify",
        ]
        assert (ADDRESS, 14) in backend.notify_callbacks
        backend.notify(ADDRESS, 14, b"still here")
        assert [s.value for s in received] == [b"still here"]
        assert connected.subscriptions.subscriber_count(tx) == 1

    async def test_stop_notify_failure_is_logged(self, connected, backend, caplog):
        tx = await _char(connected, UART_TX)
        subscription = await connected.subscribe(tx, lambda sample: None)
        backend.fail["stop_notify"] = RuntimeError("busy")

        await connected.unsubscribe(subscription)
        assert "busy" in caplog.text

    async def test_samples_iterator_ends_on_disconnect(self, connected, backend):
        tx = await _char(connected, UART_TX)
        received = []

        async def consume():
            async for sample in connected.subscriptions.samples(tx):
                received.append(sample.value)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        backend.notify(ADDRESS, 14, b"x")
        await connected.disconnect(ADDRESS)
        await asyncio.wait_for(task, timeout=1)

        assert received == [b"x"]


class TestReadWrite:

    async def test_read_once(self, connected, backend):
        battery = await _char(connected, BATTERY_LEVEL)
        sample = await connected.read_once(battery)

        assert sample.value == b"\x64"
        assert sample.characteristic is battery
        assert connected.subscriptions.latest(battery) is sample

    async def test_read_reaches_current_observers(self, connected, backend):
        battery = await _char(connected, BATTERY_LEVEL)
        received = []
        await connected.subscribe(battery, received.append)
        await connected.read_once(battery)

        assert [s.value for s in received] == [b"\x64"]
        assert backend.count("start_notify") == 1

    async def test_not_readable(self, connected, backend):
        with pytest.raises(NotReadable):
            await connected.read_once(await _char(connected, DEVICE_NAME))
        assert backend.count("read") == 0

    async def test_read_timeout(self, connected, backend):
        backend.gates["read"] = asyncio.Event()
        with pytest.raises(OperationTimeout):
            await connected.read_once(await _char(connected, BATTERY_LEVEL), timeout=0.01)

    async def test_read_answer_after_disconnect_is_discarded(self, connected, backend):
        battery = await _char(connected, BATTERY_LEVEL)
        backend.gates["read"] = asyncio.Event()
        task = asyncio.create_task(connected.read_once(battery))
        await asyncio.sleep(0)

        backend.drop(ADDRESS)
        backend.gates["read"].set()
        with pytest.raises(NotConnected):
            await task

    async def test_write_with_response(self, connected, backend):
        rx = await _char(connected, UART_RX)
        await connected.write(rx, b"hello")
        assert backend.written == [(12, b"hello", True)]

    async def test_write_without_response_only(self, connected, backend):
        cmd = await _char(connected, UART_CMD)
        await connected.write(cmd, b"\x01")
        assert backend.written == [(16, b"\x01", False)]

    async def test_not_writable(self, connected, backend):
        with pytest.raises(NotWritable):
            await connected.write(await _char(connected, UART_TX), b"x")
        assert backend.written == []

    async def test_write_stack_failure(self, connected, backend):
        backend.fail["write"] = RuntimeError("ATT error 0x03")
        with pytest.raises(StackFailure):
            await connected.write(await _char(connected, UART_RX), b"x")

    async def test_write_when_disconnected(self, connected, backend):
        rx = await _char(connected, UART_RX)
        await connected.disconnect(ADDRESS)
        with pytest.raises(NotConnected):
            await connected.write(rx, b"x")
