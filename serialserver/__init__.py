"""Serial server: expose a local serial port to one TCP client per session."""

from serialserver.bridge import ControlCommand, Session
from serialserver.escape import escape
from serialserver.server import SerialServer, run_server

__all__ = ["ControlCommand", "SerialServer", "Session", "escape", "run_server"]
