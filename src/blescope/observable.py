"""
Observable values with replay.

An Observable holds the last published value. New observers receive that
value immediately on subscribe, then every later value in publish order.
Values are replaced, never mutated, so a reader never sees a half-applied
update.
"""
import asyncio
import itertools
import logging
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()
_CLOSED = object()


class Subscription:
    """Handle returned by Observable.subscribe; cancel() detaches the observer."""

    def __init__(self, observable: "Observable", token: int):
        self._observable = observable
        self._token = token
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._observable._detach(self._token)


class Observable(Generic[T]):
    """Last-value observable with a callback registry"""

    def __init__(self, initial=_MISSING, name: str = ""):
        self.name = name
        self._value = initial
        self._observers: dict[int, Callable[[T], None]] = {}
        self._tokens = itertools.count()
        self._closed = False

    @property
    def has_value(self) -> bool:
        return self._value is not _MISSING

    @property
    def value(self) -> T | None:
        return None if self._value is _MISSING else self._value

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    @property
    def closed(self) -> bool:
        return self._closed

    def set(self, value: T) -> None:
        """Publish a new value to every observer."""
        if self._closed:
            logger.debug("Dropped value for closed observable %s", self.name)
            return
        self._value = value
        # Copy: observers may unsubscribe from inside their callback
        for callback in list(self._observers.values()):
            self._deliver(callback, value)

    def subscribe(self, callback: Callable[[T], None], replay: bool = True) -> Subscription:
        token = next(self._tokens)
        self._observers[token] = callback
        subscription = Subscription(self, token)
        if replay and self.has_value and not self._closed:
            self._deliver(callback, self._value)
        return subscription

    def close(self) -> None:
        """Stop publishing and drop every observer."""
        self._closed = True
        observers = list(self._observers.values())
        self._observers.clear()
        for callback in observers:
            closer = getattr(callback, "on_close", None)
            if closer:
                closer()

    async def stream(self) -> AsyncIterator[T]:
        """Async iterator over values, starting with the current one."""
        queue: asyncio.Queue = asyncio.Queue()

        def push(value):
            queue.put_nowait(value)

        push.on_close = lambda: queue.put_nowait(_CLOSED)

        if self._closed:
            return
        subscription = self.subscribe(push)
        try:
            while True:
                value = await queue.get()
                if value is _CLOSED:
                    break
                yield value
        finally:
            subscription.cancel()

    def _detach(self, token: int) -> None:
        self._observers.pop(token, None)

    def _deliver(self, callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception as e:
            logger.error(
                "Observer %s of %s failed: %s",
                getattr(callback, "__name__", callback), self.name, e, exc_info=True
            )
