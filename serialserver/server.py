"""TCP listener that starts one bridge session per client."""

import asyncio
import logging
from typing import Optional, Set

from serialserver.bridge import DeviceOpener, Session
from serialserver.config import Settings
from serialserver.device import open_device

GRACE_PERIOD = 3.0
UNAVAILABLE = b"Service unavailable"


class SerialServer:
    """Accept clients on the configured port and bridge each to the device.

    ``shutdown`` is the token sessions set when a client sends ``kill``;
    once it is set the server stops accepting, waits ``grace_period``
    seconds, closes the listening socket and waits for running sessions.
    """

    def __init__(
        self,
        settings: Settings,
        shutdown: Optional[asyncio.Event] = None,
        opener: DeviceOpener = open_device,
        logger: Optional[logging.Logger] = None,
        grace_period: float = GRACE_PERIOD,
    ):
        self.settings = settings
        self.shutdown = shutdown or asyncio.Event()
        self.sockets = []
        self._opener = opener
        self._logger = logger or logging.getLogger("serialserver.server")
        self._grace_period = grace_period
        self._sessions: Set[asyncio.Task] = set()
        self._started = asyncio.Event()

    async def wait_started(self) -> None:
        """Wait until the listening socket is bound."""
        await self._started.wait()

    @property
    def port(self) -> int:
        """Port actually bound; differs from settings when port 0 is used."""
        return self.sockets[0].getsockname()[1]

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        peer = writer.get_extra_info("peername", ("?", "?"))
        if self.shutdown.is_set():
            self._logger.info("Rejecting %s:%s, server is shutting down", peer[0], peer[1])
            try:
                writer.write(UNAVAILABLE)
                await writer.drain()
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError) as exc:
                self._logger.warning("Error rejecting %s:%s: %s", peer[0], peer[1], exc)
            return
        self._logger.info("Accepted connection from %s:%s", peer[0], peer[1])
        session = Session(
            reader,
            writer,
            device=self.settings.device,
            timeout=self.settings.timeout,
            shutdown=self.shutdown,
            baud=self.settings.baud,
            rtscts=self.settings.rtscts,
            opener=self._opener,
            logger=self._logger.getChild("session"),
        )
        task = asyncio.current_task()
        self._sessions.add(task)
        try:
            await session.run()
        except Exception:
            self._logger.exception("Session for %s:%s failed", peer[0], peer[1])
        finally:
            self._sessions.discard(task)

    async def serve(self) -> None:
        """Run until a client sends ``kill`` and every session has ended."""
        server = await asyncio.start_server(
            self._on_connect, self.settings.listen, self.settings.port
        )
        self.sockets = list(server.sockets or ())
        self._logger.info(
            "Serial Server listening on %s:%s", self.settings.listen, self.port
        )
        self._started.set()
        try:
            await self.shutdown.wait()
            self._logger.info("Shutdown requested, closing in %.1f s", self._grace_period)
            await asyncio.sleep(self._grace_period)
        finally:
            server.close()
            self._logger.info("Listener closed")
        if self._sessions:
            self._logger.info("Waiting for %d open session(s)", len(self._sessions))
            await asyncio.gather(*self._sessions, return_exceptions=True)


async def _serve(settings: Settings, opener: DeviceOpener) -> None:
    await SerialServer(settings, opener=opener).serve()


def run_server(settings: Settings, opener: DeviceOpener = open_device) -> None:
    """Synchronous entry: serve until killed by a client."""
    asyncio.run(_serve(settings, opener))
