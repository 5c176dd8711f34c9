"""Exceptions raised by the serial server."""


class SerialServerError(Exception):
    """Base class for all serial server errors."""


class DeviceError(SerialServerError):
    """A serial device could not be opened or used."""


class DeviceNotFound(DeviceError):
    """The named serial device does not exist."""


class DeviceBusy(DeviceError):
    """The serial device is already held by another owner."""


class DeviceIOError(DeviceError):
    """Open, configure, read or write failed on the serial device."""


class SocketIOError(SerialServerError):
    """Reading from or writing to the client connection failed."""


class ConfigInvalid(SerialServerError, ValueError):
    """A configuration value is malformed or out of range."""
