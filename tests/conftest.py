"""Shared fixtures: an in-memory serial device and a running server."""

import asyncio
import threading
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from serialserver.config import Settings
from serialserver.errors import DeviceIOError
from serialserver.server import SerialServer


class FakeDevice:
    """
    In-memory stand-in for SerialDevice.

    Tests push device output with feed(), which raises a data available
    notification the way the real notifier thread does, and inspect what
    the bridge wrote through ``written``.
    """

    def __init__(self, name: str = "fake0"):
        self.name = name
        self.written: List[bytes] = []
        self.closed = False
        self.configured = {}
        self.fail_write = False
        self.fail_read = False
        self.fail_close = False
        self.fail_configure = False
        self._rx = bytearray()
        self._rx_lock = threading.Lock()
        self._callback: Optional[Callable[[], None]] = None

    @property
    def in_waiting(self) -> int:
        with self._rx_lock:
            return len(self._rx)

    @property
    def output(self) -> bytes:
        return b"".join(self.written)

    def feed(self, data: bytes) -> None:
        with self._rx_lock:
            self._rx.extend(data)
        callback = self._callback
        if callback is not None:
            callback()

    def configure(self, **kwargs) -> None:
        if self.fail_configure:
            raise DeviceIOError(f"Error setting serial port params on {self.name}: bad baud")
        self.configured = kwargs

    def subscribe_data_available(self, callback: Callable[[], None]) -> None:
        self._callback = callback

    def read(self, max_bytes: Optional[int] = None) -> bytes:
        if self.fail_read:
            raise DeviceIOError(f"Error reading {self.name}: gone")
        with self._rx_lock:
            count = len(self._rx) if max_bytes is None else min(len(self._rx), max_bytes)
            data = bytes(self._rx[:count])
            del self._rx[:count]
            pending = bool(self._rx)
        # level triggered, like the polling notifier
        callback = self._callback
        if pending and callback is not None:
            callback()
        return data

    def write(self, data: bytes) -> None:
        if self.fail_write:
            raise DeviceIOError(f"Error writing {self.name}: gone")
        self.written.append(bytes(data))

    def close(self) -> None:
        self.closed = True
        self._callback = None
        if self.fail_close:
            raise DeviceIOError(f"Error closing {self.name}: gone")


class FakeOpener:
    """Device opener handing out a new FakeDevice per session."""

    def __init__(self):
        self.devices: List[FakeDevice] = []
        self.error: Optional[Exception] = None
        self.setup: Optional[Callable[[FakeDevice], None]] = None

    def __call__(self, name: str, timeout_ms: int) -> FakeDevice:
        if self.error is not None:
            raise self.error
        device = FakeDevice(name)
        if self.setup is not None:
            self.setup(device)
        self.devices.append(device)
        return device


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def opener():
    return FakeOpener()


@pytest_asyncio.fixture
async def server(opener):
    srv = SerialServer(
        Settings(device="fake0", port=0, listen="127.0.0.1"),
        opener=opener,
        grace_period=0.1,
    )
    task = asyncio.create_task(srv.serve())
    await asyncio.wait_for(srv.wait_started(), 2.0)
    yield srv
    srv.shutdown.set()
    await asyncio.wait_for(task, 5.0)


@pytest_asyncio.fixture
async def connect(server):
    """Factory opening client connections to the running server."""
    writers = []

    async def _connect():
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writers.append(writer)
        return reader, writer

    yield _connect
    for writer in writers:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass
