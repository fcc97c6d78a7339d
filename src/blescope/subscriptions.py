"""
Subscription Manager - notifications, reads and writes.

One physical notification registration exists per (peripheral, handle),
shared by any number of logical observers and released when the last one
detaches. Registrations belong to one connection epoch; when the
connection ends they are dropped and late deliveries are discarded.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from .backend import BLEBackendBase
from .errors import (
    NotConnected,
    NotNotifiable,
    NotReadable,
    NotWritable,
    OperationTimeout,
    StackFailure,
)
from .models import CharacteristicDescriptor, CharacteristicSample, normalize_address
from .observable import Observable, Subscription
from .session import SessionManager

logger = logging.getLogger(__name__)

_END = object()


class _Registration:
    """One physical notification registration with the stack"""

    def __init__(self, characteristic: CharacteristicDescriptor):
        self.characteristic = characteristic
        self.epoch = characteristic.epoch
        self.samples: Observable[CharacteristicSample] = Observable(
            name=f"notify:{characteristic.address}:{characteristic.handle}"
        )
        self.refcount = 0
        self.ready = asyncio.Event()
        self.error: BaseException | None = None
        self.closed = False


class CharacteristicSubscription:
    """A logical observer of one characteristic's notifications."""

    def __init__(
        self,
        manager: "SubscriptionManager",
        registration: _Registration,
        observer: Subscription,
    ):
        self._manager = manager
        self._registration = registration
        self._observer = observer

    @property
    def characteristic(self) -> CharacteristicDescriptor:
        return self._registration.characteristic

    @property
    def active(self) -> bool:
        return self._observer.active and not self._registration.closed

    @property
    def latest(self) -> CharacteristicSample | None:
        return self._registration.samples.value

    async def close(self) -> None:
        await self._manager.unsubscribe(self)


class SubscriptionManager:
    """Multiplexes notification registrations across observers."""

    def __init__(self, backend: BLEBackendBase, sessions: SessionManager):
        self.backend = backend
        self.sessions = sessions
        self._registrations: dict[tuple[str, int], _Registration] = {}
        self._latest: dict[tuple[str, int], CharacteristicSample] = {}
        self._releasing: dict[tuple[str, int], asyncio.Event] = {}
        sessions.add_teardown_listener(self._on_teardown)

    def _check_live(self, characteristic: CharacteristicDescriptor) -> None:
        if not self.sessions.is_current(characteristic.address, characteristic.epoch):
            raise NotConnected(
                f"{characteristic.address} is not connected "
                f"(or {characteristic.uuid} belongs to an earlier connection)"
            )

    def subscriber_count(self, characteristic: CharacteristicDescriptor) -> int:
        registration = self._registrations.get(characteristic.key)
        return registration.refcount if registration else 0

    def latest(self, characteristic: CharacteristicDescriptor) -> CharacteristicSample | None:
        """Most recent sample of the characteristic on the live connection."""
        sample = self._latest.get(characteristic.key)
        if sample is None or sample.characteristic.epoch != characteristic.epoch:
            return None
        return sample

    # --- Notifications ---

    async def subscribe(
        self,
        characteristic: CharacteristicDescriptor,
        callback: Callable[[CharacteristicSample], None],
    ) -> CharacteristicSubscription:
        """
        Attach an observer; the first one registers with the stack.

        The latest sample, if any, is delivered to `callback` immediately.

        Raises:
            NotNotifiable: characteristic has neither notify nor indicate
            NotConnected: peripheral not connected, or stale descriptor
            StackFailure: the stack refused the registration
        """
        if not characteristic.notifiable:
            raise NotNotifiable(f"{characteristic.uuid} does not support notifications")
        self._check_live(characteristic)

        key = characteristic.key
        releasing = self._releasing.get(key)
        if releasing is not None:
            # The last observer is still disabling notifications with the stack
            await releasing.wait()
            self._check_live(characteristic)

        registration = self._registrations.get(key)
        if registration is None:
            registration = _Registration(characteristic)
            registration.refcount = 1
            self._registrations[key] = registration
            await self._register(registration)
        else:
            registration.refcount += 1
            await registration.ready.wait()
            if registration.error is not None:
                registration.refcount -= 1
                raise StackFailure.wrap(
                    f"subscribe {characteristic.uuid}", registration.error
                ) from registration.error

        if registration.closed:
            registration.refcount -= 1
            raise NotConnected(f"{characteristic.address} disconnected while subscribing")

        observer = registration.samples.subscribe(callback)
        logger.debug(
            "Observer attached to %s (%d total)", characteristic.uuid, registration.refcount
        )
        return CharacteristicSubscription(self, registration, observer)

    async def _register(self, registration: _Registration) -> None:
        characteristic = registration.characteristic

        def on_notification(data: bytes) -> None:
            self._on_notification(registration, data)

        try:
            await self.backend.start_notify(
                characteristic.address, characteristic.handle, on_notification
            )
        except BaseException as e:
            registration.error = e
            registration.refcount -= 1
            if self._registrations.get(characteristic.key) is registration:
                del self._registrations[characteristic.key]
            if not isinstance(e, Exception):
                raise
            logger.error("Error subscribing to characteristic %s: %s", characteristic.uuid, e)
            raise StackFailure.wrap(f"subscribe {characteristic.uuid}", e) from e
        finally:
            registration.ready.set()

        logger.info("📥 Notifications enabled for %s on %s", characteristic.uuid, characteristic.address)

    async def unsubscribe(self, subscription: CharacteristicSubscription) -> None:
        """
        Detach an observer; the last one releases the stack registration.

        Stack failures while disabling notifications are logged, not raised.
        """
        if not subscription._observer.active:
            return
        subscription._observer.cancel()

        registration = subscription._registration
        registration.refcount -= 1
        if registration.refcount > 0 or registration.closed:
            return

        characteristic = registration.characteristic
        registration.closed = True
        registration.samples.close()
        if self._registrations.get(characteristic.key) is registration:
            del self._registrations[characteristic.key]

        if not self.sessions.is_current(characteristic.address, registration.epoch):
            return
        released = asyncio.Event()
        self._releasing[characteristic.key] = released
        try:
            await self.backend.stop_notify(characteristic.address, characteristic.handle)
            logger.info("Notifications disabled for %s", characteristic.uuid)
        except Exception as e:
            logger.warning("Error unsubscribing from characteristic %s: %s", characteristic.uuid, e)
        finally:
            if self._releasing.get(characteristic.key) is released:
                del self._releasing[characteristic.key]
            released.set()

    async def samples(
        self, characteristic: CharacteristicDescriptor
    ) -> AsyncIterator[CharacteristicSample]:
        """
        Async iterator over samples; subscribes on entry, unsubscribes on exit.

        Ends when the connection does.
        """
        queue: asyncio.Queue = asyncio.Queue()

        def push(sample: CharacteristicSample) -> None:
            queue.put_nowait(sample)

        push.on_close = lambda: queue.put_nowait(_END)

        subscription = await self.subscribe(characteristic, push)
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                yield item
        finally:
            await self.unsubscribe(subscription)

    def _on_notification(self, registration: _Registration, data: bytes) -> None:
        characteristic = registration.characteristic
        if registration.closed or not self.sessions.is_current(
            characteristic.address, registration.epoch
        ):
            logger.debug("Dropped late notification from %s", characteristic.uuid)
            return
        sample = CharacteristicSample(value=bytes(data), characteristic=characteristic)
        self._latest[characteristic.key] = sample
        registration.samples.set(sample)

    def _on_teardown(self, address: str) -> None:
        key_address = normalize_address(address)
        for key in [k for k in self._registrations if k[0] == key_address]:
            registration = self._registrations.pop(key)
            registration.closed = True
            registration.samples.close()
            logger.debug("Dropped registration for %s", registration.characteristic.uuid)
        for key in [k for k in self._latest if k[0] == key_address]:
            del self._latest[key]

    # --- Reads and writes ---

    async def read_once(
        self, characteristic: CharacteristicDescriptor, timeout: float | None = None
    ) -> CharacteristicSample:
        """
        Fetch the value once. Subscription state is untouched, but current
        observers see the value as the characteristic's latest.

        Raises:
            NotReadable, NotConnected, OperationTimeout, StackFailure
        """
        if not characteristic.readable:
            raise NotReadable(f"{characteristic.uuid} is not readable")
        self._check_live(characteristic)

        data = await self._call(
            "read", characteristic, timeout,
            self.backend.read(characteristic.address, characteristic.handle),
        )
        sample = CharacteristicSample(value=bytes(data), characteristic=characteristic)
        self._latest[characteristic.key] = sample
        registration = self._registrations.get(characteristic.key)
        if registration is not None and not registration.closed:
            registration.samples.set(sample)
        return sample

    async def write(
        self,
        characteristic: CharacteristicDescriptor,
        data: bytes,
        with_response: bool = True,
        timeout: float | None = None,
    ) -> None:
        """
        Write a value.

        Raises:
            NotWritable, NotConnected, OperationTimeout, StackFailure
        """
        if not characteristic.writable:
            raise NotWritable(f"{characteristic.uuid} is not writable")
        if with_response and "write" not in characteristic.properties:
            # Only write-without-response is supported
            with_response = False
        self._check_live(characteristic)

        await self._call(
            "write", characteristic, timeout,
            self.backend.write(
                characteristic.address, characteristic.handle, bytes(data), with_response
            ),
        )
        logger.debug("Wrote %d byte(s) to %s", len(data), characteristic.uuid)

    async def _call(self, action: str, characteristic: CharacteristicDescriptor, timeout, request):
        try:
            if timeout is not None:
                result = await asyncio.wait_for(request, timeout=timeout)
            else:
                result = await request
        except asyncio.TimeoutError as e:
            raise OperationTimeout(f"{action} {characteristic.uuid} timed out") from e
        except Exception as e:
            if not self.sessions.is_current(characteristic.address, characteristic.epoch):
                raise NotConnected(f"{characteristic.address} disconnected during {action}") from e
            logger.error("Error during %s of characteristic %s: %s", action, characteristic.uuid, e)
            raise StackFailure.wrap(f"{action} {characteristic.uuid}", e) from e

        # Results that arrive after a disconnect belong to a dead connection
        if not self.sessions.is_current(characteristic.address, characteristic.epoch):
            raise NotConnected(f"{characteristic.address} disconnected during {action}")
        return result
