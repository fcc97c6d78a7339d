"""
Session Manager - connect/disconnect lifecycle per peripheral.

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTING -> DISCONNECTED
    CONNECTING -> DISCONNECTED (failure, timeout or disconnect request)

Status is kept per peripheral identity in an Observable, so every observer
of one peripheral sees the same transition sequence and gets the current
status on subscribe. Whether a peripheral is connected is decided by this
state machine alone.

Each connect attempt bumps the peripheral's epoch. Descriptors, reads and
notifications carry the epoch they belong to; once it moves on they are
stale and get rejected or dropped.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from .backend import BLEBackendBase
from .config_loader import DEFAULT_MTU
from .errors import (
    AlreadyConnected,
    AlreadyConnecting,
    NotConnected,
    OperationTimeout,
    SessionBusy,
    StackFailure,
)
from .models import ConnectionStatus, PeripheralHandle, address_of, normalize_address
from .observable import Observable, Subscription

logger = logging.getLogger(__name__)

TeardownListener = Callable[[str], None]


@dataclass
class _Session:
    address: str
    status: Observable[ConnectionStatus]
    epoch: int = 0
    mtu: int | None = None
    name: str = ""
    last_error: str | None = None
    idle: asyncio.Event = field(default_factory=asyncio.Event)


class SessionManager:
    """Owns the connection state machine of every peripheral."""

    def __init__(self, backend: BLEBackendBase, mtu: int = DEFAULT_MTU):
        self.backend = backend
        self.mtu_target = mtu
        self._sessions: dict[str, _Session] = {}
        self._teardown_listeners: list[TeardownListener] = []

    # --- Observation ---

    def _session(self, peripheral: PeripheralHandle | str) -> _Session:
        address = address_of(peripheral)
        key = normalize_address(address)
        session = self._sessions.get(key)
        if session is None:
            session = _Session(
                address=address,
                status=Observable(ConnectionStatus.DISCONNECTED, name=f"status:{key}"),
            )
            session.idle.set()
            self._sessions[key] = session
        if isinstance(peripheral, PeripheralHandle) and peripheral.name:
            session.name = peripheral.name
        return session

    def status(self, peripheral: PeripheralHandle | str) -> ConnectionStatus:
        session = self._sessions.get(normalize_address(address_of(peripheral)))
        return session.status.value if session else ConnectionStatus.DISCONNECTED

    def observe(
        self, peripheral: PeripheralHandle | str, callback: Callable[[ConnectionStatus], None]
    ) -> Subscription:
        """Subscribe to status changes; the current status is delivered first."""
        return self._session(peripheral).status.subscribe(callback)

    def status_stream(self, peripheral: PeripheralHandle | str) -> AsyncIterator[ConnectionStatus]:
        return self._session(peripheral).status.stream()

    def is_connected(self, peripheral: PeripheralHandle | str) -> bool:
        return self.status(peripheral) == ConnectionStatus.CONNECTED

    def epoch(self, peripheral: PeripheralHandle | str) -> int:
        session = self._sessions.get(normalize_address(address_of(peripheral)))
        return session.epoch if session else 0

    def is_current(self, peripheral: PeripheralHandle | str, epoch: int) -> bool:
        """True while `epoch` names the live connection of the peripheral."""
        return self.is_connected(peripheral) and self.epoch(peripheral) == epoch

    def mtu(self, peripheral: PeripheralHandle | str) -> int | None:
        session = self._sessions.get(normalize_address(address_of(peripheral)))
        return session.mtu if session else None

    def describe(self, peripheral: PeripheralHandle | str) -> dict:
        session = self._session(peripheral)
        return {
            "address": session.address,
            "name": session.name,
            "state": session.status.value.value,
            "connected": session.status.value == ConnectionStatus.CONNECTED,
            "mtu": session.mtu,
            "error": session.last_error,
        }

    def connected_addresses(self) -> list[str]:
        return [
            s.address for s in self._sessions.values()
            if s.status.value == ConnectionStatus.CONNECTED
        ]

    def add_teardown_listener(self, listener: TeardownListener) -> None:
        """`listener(address)` runs whenever a connection of `address` ends."""
        self._teardown_listeners.append(listener)

    # --- Lifecycle ---

    async def connect(
        self,
        peripheral: PeripheralHandle | str,
        auto_connect: bool = False,
        timeout: float | None = None,
    ) -> None:
        """
        Connect and negotiate the MTU.

        Raises:
            AlreadyConnecting / AlreadyConnected: misuse, no stack call made
            SessionBusy: a disconnect of this peripheral is still running
            OperationTimeout: `timeout` expired; the attempt was torn down
            NotConnected: disconnect() was called while connecting
            StackFailure: the stack failed the connection
        """
        session = self._session(peripheral)
        current = session.status.value
        if current == ConnectionStatus.CONNECTING:
            raise AlreadyConnecting(f"Already connecting to {session.address}")
        if current == ConnectionStatus.CONNECTED:
            raise AlreadyConnected(f"Already connected to {session.address}")
        if current == ConnectionStatus.DISCONNECTING:
            raise SessionBusy(f"{session.address} is still disconnecting")

        session.epoch += 1
        epoch = session.epoch
        session.last_error = None
        session.idle.clear()
        session.status.set(ConnectionStatus.CONNECTING)
        logger.info("🔗 Connecting to %s", session.address)

        try:
            request = self.backend.connect(
                session.address, self._on_stack_disconnect, auto_connect=auto_connect
            )
            if timeout is not None:
                await asyncio.wait_for(request, timeout=timeout)
            else:
                await request
        except asyncio.TimeoutError as e:
            if session.epoch != epoch:
                raise NotConnected(f"Connection to {session.address} was cancelled") from e
            logger.error("Connecting to %s timed out after %.1fs", session.address, timeout)
            session.last_error = "connect timeout"
            session.epoch += 1
            try:
                await self.backend.disconnect(session.address)
            except Exception as exc:
                logger.debug("Aborting connection to %s failed: %s", session.address, exc)
            # A disconnect() that ran meanwhile has already published DISCONNECTED
            if session.status.value != ConnectionStatus.DISCONNECTED:
                session.status.set(ConnectionStatus.DISCONNECTED)
            session.idle.set()
            raise OperationTimeout(
                f"Connect to {session.address} timed out after {timeout}s"
            ) from e
        except Exception as e:
            if session.epoch != epoch:
                raise NotConnected(f"Connection to {session.address} was cancelled") from e
            logger.error("Error connecting to device %s: %s", session.address, e)
            session.last_error = str(e)
            session.epoch += 1
            session.status.set(ConnectionStatus.DISCONNECTED)
            session.idle.set()
            raise StackFailure.wrap(f"connect {session.address}", e) from e

        if session.epoch != epoch:
            # disconnect() ran while the stack was connecting and owns the teardown;
            # drop the link the stack completed anyway
            if session.status.value == ConnectionStatus.DISCONNECTED:
                try:
                    await self.backend.disconnect(session.address)
                except Exception as e:
                    logger.debug("Dropping late link to %s failed: %s", session.address, e)
            raise NotConnected(f"Connection to {session.address} was cancelled")

        session.status.set(ConnectionStatus.CONNECTED)
        logger.info("Connected to %s", session.address)
        await self._negotiate_mtu(session, epoch)

    async def disconnect(self, peripheral: PeripheralHandle | str) -> None:
        """
        Tear the connection down; also valid while connecting.

        Raises:
            StackFailure: the stack reported an error; the session is
                          DISCONNECTED regardless
        """
        session = self._sessions.get(normalize_address(address_of(peripheral)))
        if session is None or session.status.value == ConnectionStatus.DISCONNECTED:
            logger.debug("Disconnect %s: already disconnected", address_of(peripheral))
            return
        if session.status.value == ConnectionStatus.DISCONNECTING:
            await session.idle.wait()
            return
        await self._teardown(session, reason="requested")

    async def disconnect_all(self) -> None:
        for session in list(self._sessions.values()):
            if session.status.value in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
                try:
                    await self.disconnect(session.address)
                except StackFailure as e:
                    logger.warning("Disconnect of %s failed: %s", session.address, e)

    async def _teardown(self, session: _Session, reason: str, quiet: bool = False) -> None:
        session.epoch += 1
        session.status.set(ConnectionStatus.DISCONNECTING)
        logger.info("🔌 Disconnecting %s (%s)", session.address, reason)
        self._notify_teardown(session.address)

        error = None
        try:
            await self.backend.disconnect(session.address)
        except Exception as e:
            log = logger.debug if quiet else logger.error
            log("Error disconnecting from device %s: %s", session.address, e)
            error = e
        finally:
            session.mtu = None
            session.status.set(ConnectionStatus.DISCONNECTED)
            session.idle.set()

        if error is not None and not quiet:
            raise StackFailure.wrap(f"disconnect {session.address}", error) from error

    def _on_stack_disconnect(self, address: str) -> None:
        session = self._sessions.get(normalize_address(address))
        if session is None or session.status.value != ConnectionStatus.CONNECTED:
            # Explicit teardown or failed connect; those paths own the state
            return
        logger.warning("Connection to %s lost", session.address)
        session.epoch += 1
        session.mtu = None
        session.last_error = "connection lost"
        session.status.set(ConnectionStatus.DISCONNECTING)
        self._notify_teardown(session.address)
        session.status.set(ConnectionStatus.DISCONNECTED)
        session.idle.set()

    def _notify_teardown(self, address: str) -> None:
        for listener in list(self._teardown_listeners):
            try:
                listener(address)
            except Exception as e:
                logger.error("Teardown listener failed for %s: %s", address, e, exc_info=True)

    async def _negotiate_mtu(self, session: _Session, epoch: int) -> None:
        try:
            granted = await self.backend.request_mtu(session.address, self.mtu_target)
        except Exception as e:
            logger.warning(
                "MTU negotiation with %s failed, keeping stack default: %s", session.address, e
            )
            return
        if session.epoch == epoch:
            session.mtu = granted
            logger.info("MTU for %s: %d", session.address, granted)
