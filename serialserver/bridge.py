"""Bridge between one TCP client and the serial device.

A session reads bursts from the client and writes them to the device, and
forwards whatever the device produces back to the client. A burst is
whatever the socket has buffered at the moment it is read; if it starts
with ``quit`` the session ends, if it starts with ``kill`` the session ends
and the server stops taking new connections.
"""

import asyncio
import enum
import logging
from typing import Callable, Optional

from serialserver.device import DEFAULT_BAUD, SerialDevice, open_device
from serialserver.errors import DeviceError, DeviceIOError, SocketIOError
from serialserver.escape import escape

BUFFER_SIZE = 1024
DRAIN_PAUSE = 0.05

DeviceOpener = Callable[[str, int], SerialDevice]


class ControlCommand(enum.Enum):
    """In-band commands a client can send instead of payload."""

    QUIT = b"quit"
    KILL = b"kill"

    @classmethod
    def match(cls, burst: bytes) -> Optional["ControlCommand"]:
        """Return the command ``burst`` starts with, or None."""
        for command in cls:
            if burst.startswith(command.value):
                return command
        return None


class Session:
    """Relay bytes between one client connection and the serial device.

    The session opens the device when it starts and owns it, together with
    the connection, until ``run`` returns. Both directions share one
    scratch buffer; a lock keeps one burst in the buffer at a time.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        device: str,
        timeout: int,
        shutdown: asyncio.Event,
        baud: int = DEFAULT_BAUD,
        rtscts: bool = True,
        opener: DeviceOpener = open_device,
        logger: Optional[logging.Logger] = None,
        buffer_size: int = BUFFER_SIZE,
        drain_pause: float = DRAIN_PAUSE,
    ):
        self.device_name = device
        self.timeout = timeout
        self.baud = baud
        self.rtscts = rtscts
        self._reader = reader
        self._writer = writer
        self._shutdown = shutdown
        self._opener = opener
        self._logger = logger or logging.getLogger("serialserver.bridge")
        self._buffer = bytearray(buffer_size)
        self._lock = asyncio.Lock()
        self._data_ready = asyncio.Event()
        self._drain_pause = drain_pause
        self._device: Optional[SerialDevice] = None
        self._running = False
        peer = writer.get_extra_info("peername") or ("?", "?")
        self.peer = f"{peer[0]}:{peer[1]}"

    @property
    def running(self) -> bool:
        """True from the start of ``run`` until both endpoints are released."""
        return self._running

    async def run(self) -> None:
        """Bridge until the client leaves, sends a command or I/O fails."""
        self._running = True
        try:
            try:
                self._device = await asyncio.to_thread(
                    self._opener, self.device_name, self.timeout
                )
                self._device.configure(baudrate=self.baud, rtscts=self.rtscts)
            except DeviceError as exc:
                self._logger.error("Cannot bridge %s: %s", self.peer, exc)
                return
            self._logger.info("Bridging %s to %s", self.peer, self.device_name)
            loop = asyncio.get_running_loop()
            self._device.subscribe_data_available(
                lambda: loop.call_soon_threadsafe(self._data_ready.set)
            )
            await self._relay()
        finally:
            try:
                await self._close()
            finally:
                self._running = False

    async def _relay(self) -> None:
        tasks = {
            asyncio.create_task(self._socket_to_device()),
            asyncio.create_task(self._device_to_socket()),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            task.result()

    async def _receive(self) -> bytes:
        try:
            return await self._reader.read(len(self._buffer))
        except (ConnectionError, OSError) as exc:
            raise SocketIOError(f"Error reading from {self.peer}: {exc}") from exc

    async def _send(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            raise SocketIOError(f"Error writing to {self.peer}: {exc}") from exc

    async def _socket_to_device(self) -> None:
        """Forward client bursts to the device until EOF, a command or an error."""
        while True:
            try:
                data = await self._receive()
            except SocketIOError as exc:
                self._logger.error("%s", exc)
                return
            if not data:
                self._logger.info("Connection closed by %s", self.peer)
                return
            async with self._lock:
                count = len(data)
                self._buffer[:count] = data
                burst = bytes(self._buffer[:count])
                command = ControlCommand.match(burst)
                if command is ControlCommand.QUIT:
                    self._logger.info("%s sent quit", self.peer)
                    return
                if command is ControlCommand.KILL:
                    self._logger.warning("%s sent kill, shutting down server", self.peer)
                    self._shutdown.set()
                    return
                try:
                    await asyncio.to_thread(self._device.write, burst)
                except DeviceIOError as exc:
                    self._logger.error("%s", exc)
                    return
            self._trace(f"Read from {self.peer}", burst)

    async def _device_to_socket(self) -> None:
        """Forward device output to the client each time the device has data."""
        while True:
            await self._data_ready.wait()
            self._data_ready.clear()
            async with self._lock:
                try:
                    count = await self._drain_device()
                    if not count:
                        continue
                    burst = bytes(self._buffer[:count])
                    await self._send(burst)
                except (DeviceIOError, SocketIOError) as exc:
                    self._logger.error("%s", exc)
                    return
            self._trace(f"Wrote to {self.peer}", burst)

    async def _drain_device(self) -> int:
        """Fill the buffer from the device, pausing between reads.

        Stops when a read comes back empty or the buffer is full; anything
        left on the device is picked up by the next notification.
        """
        count = 0
        capacity = len(self._buffer)
        while count < capacity:
            chunk = await asyncio.to_thread(self._device.read, capacity - count)
            if not chunk:
                break
            self._buffer[count:count + len(chunk)] = chunk
            count += len(chunk)
            await asyncio.sleep(self._drain_pause)
        return count

    def _trace(self, action: str, burst: bytes) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(
                "%s %d bytes: %s", action, len(burst), escape(burst, 0, len(burst), True)
            )

    async def _close(self) -> None:
        """Release the device and the connection, logging close failures."""
        if self._device is not None:
            try:
                await asyncio.to_thread(self._device.close)
            except DeviceIOError as exc:
                self._logger.warning("%s", exc)
            self._device = None
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            self._logger.warning("Error closing connection to %s: %s", self.peer, exc)
        self._logger.info("Session for %s closed", self.peer)
