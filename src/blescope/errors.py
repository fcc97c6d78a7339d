"""Exception taxonomy for blescope operations."""


class BlescopeError(Exception):
    """Base class for every error raised by blescope."""


class AdapterUnavailable(BlescopeError):
    """Bluetooth radio is off or unusable."""


class ScanAlreadyActive(BlescopeError):
    """A scan is already running."""


class NotConnected(BlescopeError):
    """Peripheral is not connected, or the connection the caller refers to is gone."""


class AlreadyConnecting(BlescopeError):
    """A connect request for this peripheral is still in flight."""


class AlreadyConnected(BlescopeError):
    """Peripheral is already connected."""


class SessionBusy(BlescopeError):
    """Peripheral is being torn down; retry once it is disconnected."""


class CapabilityError(BlescopeError):
    """Characteristic does not support the requested operation."""


class NotReadable(CapabilityError):
    pass


class NotWritable(CapabilityError):
    pass


class NotNotifiable(CapabilityError):
    pass


class UnknownCharacteristic(BlescopeError):
    """No characteristic with that UUID or handle in the current service tree."""


class OperationTimeout(BlescopeError):
    """A caller-supplied timeout expired before the stack answered."""


class StackFailure(BlescopeError):
    """Opaque error reported by the underlying Bluetooth stack."""

    def __init__(self, message: str, original: BaseException | None = None):
        super().__init__(message)
        self.original = original

    @classmethod
    def wrap(cls, action: str, exc: BaseException) -> "StackFailure":
        return cls(f"{action}: {exc}", original=exc)


class RemoteError(BlescopeError):
    """The remote blescope service answered with an error or was unreachable."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
