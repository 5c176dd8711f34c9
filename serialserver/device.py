"""Serial device access on top of pyserial.

The bridge only needs a handful of operations from a serial port: open it
exclusively, set the line parameters, read whatever is buffered without
blocking, write, and learn when new bytes arrive. pyserial has no data
available event, so a small notifier thread polls ``in_waiting`` and calls
the subscriber whenever input is pending.
"""

import errno
import logging
import threading
from typing import Callable, Optional

import serial

from serialserver.errors import DeviceBusy, DeviceIOError, DeviceNotFound

DEFAULT_BAUD = 9600
POLL_INTERVAL = 0.01

_NOT_FOUND_ERRNOS = {errno.ENOENT, errno.ENODEV, errno.ENXIO}
_BUSY_ERRNOS = {errno.EBUSY, errno.EAGAIN, errno.EWOULDBLOCK}


def _open_error(name: str, exc: Exception) -> Exception:
    """Map a pyserial open failure onto the device error taxonomy."""
    code = getattr(exc, "errno", None)
    text = str(exc)
    if code in _NOT_FOUND_ERRNOS or "FileNotFoundError" in text:
        return DeviceNotFound(f"Port {name} not found")
    if code in _BUSY_ERRNOS or "PermissionError" in text or "exclusively lock" in text:
        return DeviceBusy(f"Port {name} in use")
    return DeviceIOError(f"Could not open port {name}: {exc}")


class SerialDevice:
    """An opened serial device owned by one bridge session."""

    def __init__(
        self,
        ser: serial.SerialBase,
        name: str,
        logger: Optional[logging.Logger] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.name = name
        self._serial = ser
        self._logger = logger or logging.getLogger("serialserver.device")
        self._poll_interval = poll_interval
        self._callback: Optional[Callable[[], None]] = None
        self._stop = threading.Event()
        self._notifier: Optional[threading.Thread] = None
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def in_waiting(self) -> int:
        try:
            return self._serial.in_waiting
        except (serial.SerialException, OSError) as exc:
            raise DeviceIOError(f"Error polling {self.name}: {exc}") from exc

    def configure(
        self,
        baudrate: int = DEFAULT_BAUD,
        bytesize: int = serial.EIGHTBITS,
        stopbits: float = serial.STOPBITS_ONE,
        parity: str = serial.PARITY_NONE,
        rtscts: bool = True,
    ) -> None:
        """Set the line parameters; defaults are 9600 8N1 with RTS/CTS."""
        try:
            self._serial.baudrate = baudrate
            self._serial.bytesize = bytesize
            self._serial.stopbits = stopbits
            self._serial.parity = parity
            self._serial.rtscts = rtscts
        except (ValueError, serial.SerialException, OSError) as exc:
            raise DeviceIOError(f"Error setting serial port params on {self.name}: {exc}") from exc
        self._logger.debug(
            "Configured %s: %s baud, %s%s%s, rtscts=%s",
            self.name, baudrate, bytesize, parity, stopbits, rtscts,
        )

    def subscribe_data_available(self, callback: Callable[[], None]) -> None:
        """Call ``callback`` from the notifier thread while input is pending.

        The callback runs on a thread owned by this device and must not do
        the read itself; it should hand the event to its owner.
        """
        if self._callback is not None:
            raise DeviceIOError(f"{self.name} already has a data listener")
        self._callback = callback
        self._notifier = threading.Thread(
            target=self._notify_loop, name=f"notify-{self.name}", daemon=True
        )
        self._notifier.start()

    def _notify_loop(self) -> None:
        while not self._stop.is_set():
            try:
                waiting = self._serial.in_waiting
            except (serial.SerialException, OSError) as exc:
                if not self._stop.is_set():
                    self._logger.error("Device %s failed: %s", self.name, exc)
                    # Let the owner find the error on its next read.
                    self._callback()
                return
            if waiting:
                self._callback()
            self._stop.wait(self._poll_interval)

    def read(self, max_bytes: Optional[int] = None) -> bytes:
        """Return the bytes currently buffered, never waiting for more."""
        try:
            count = self._serial.in_waiting
            if max_bytes is not None:
                count = min(count, max_bytes)
            if count <= 0:
                return b""
            return self._serial.read(count)
        except (serial.SerialException, OSError) as exc:
            raise DeviceIOError(f"Error reading {self.name}: {exc}") from exc

    def write(self, data: bytes) -> None:
        try:
            self._serial.write(data)
        except (serial.SerialException, OSError) as exc:
            raise DeviceIOError(f"Error writing {self.name}: {exc}") from exc

    def close(self) -> None:
        """Stop notifications and close the port. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        if self._notifier is not None and self._notifier is not threading.current_thread():
            self._notifier.join(timeout=1.0)
        try:
            self._serial.close()
        except (serial.SerialException, OSError) as exc:
            raise DeviceIOError(f"Error closing {self.name}: {exc}") from exc
        self._logger.debug("Serial port %s closed", self.name)


def open_device(
    name: str,
    timeout_ms: int,
    logger: Optional[logging.Logger] = None,
) -> SerialDevice:
    """Open ``name`` exclusively and return it as a SerialDevice.

    ``name`` is a device path or any pyserial URL (``loop://``,
    ``socket://host:port``). ``timeout_ms`` bounds each write; reads never
    block. Raises DeviceNotFound, DeviceBusy or DeviceIOError.
    """
    try:
        ser = serial.serial_for_url(name, do_not_open=True, exclusive=True)
        ser.timeout = 0
        ser.write_timeout = timeout_ms / 1000.0
        ser.open()
    except (serial.SerialException, OSError) as exc:
        raise _open_error(name, exc) from exc
    except ValueError as exc:
        raise DeviceIOError(f"Could not open port {name}: {exc}") from exc
    return SerialDevice(ser, name, logger=logger)
