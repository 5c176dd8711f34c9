"""Configuration for the serial server.

Values come from three places, highest priority first: the command line,
a Java-style properties file (``serialserver.properties`` by default) and
the built-in defaults.
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from serialserver.errors import ConfigInvalid

logger = logging.getLogger("serialserver.config")

PROPERTIES_FILE = "serialserver.properties"
PROPERTY_PREFIX = "serialserver."

DEFAULT_DEVICE = "COM1" if sys.platform == "win32" else "/dev/ttyS0"
DEFAULT_TIMEOUT = 5000
DEFAULT_PORT = 8232
DEFAULT_LISTEN = "0.0.0.0"
DEFAULT_BAUD = 9600
DEFAULT_RTSCTS = True


@dataclass(frozen=True)
class Settings:
    """Resolved server settings."""

    device: str = DEFAULT_DEVICE
    timeout: int = DEFAULT_TIMEOUT
    port: int = DEFAULT_PORT
    listen: str = DEFAULT_LISTEN
    baud: int = DEFAULT_BAUD
    rtscts: bool = DEFAULT_RTSCTS


_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
_SEPARATORS = "=:"
_WHITESPACE = " \t\f"


def _logical_lines(text: str):
    """Join ``\\``-continued lines and drop blanks and comments."""
    pending = None
    for raw in text.splitlines():
        line = raw.lstrip(_WHITESPACE)
        if pending is None:
            if not line or line[0] in "#!":
                continue
        else:
            line = pending + line
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2:
            pending = line[:-1]
            continue
        pending = None
        yield line
    if pending is not None:
        yield pending


def _unescape(text: str) -> str:
    out = []
    chars = iter(text)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        ch = next(chars, "")
        if ch == "u":
            digits = "".join(next(chars, "") for _ in range(4))
            try:
                out.append(chr(int(digits, 16)))
            except ValueError:
                raise ConfigInvalid(f"Malformed \\uxxxx escape: \\u{digits}") from None
        else:
            out.append(_ESCAPES.get(ch, ch))
    return "".join(out)


def _split(line: str):
    """Split a logical line at the first unescaped separator."""
    index = 0
    while index < len(line):
        ch = line[index]
        if ch == "\\":
            index += 2
            continue
        if ch in _SEPARATORS or ch in _WHITESPACE:
            break
        index += 1
    key = line[:index]
    rest = line[index:].lstrip(_WHITESPACE)
    if rest[:1] in ("=", ":"):
        rest = rest[1:].lstrip(_WHITESPACE)
    return _unescape(key), _unescape(rest)


def parse_properties(text: str) -> dict:
    """Parse properties file text; a repeated key keeps its last value."""
    return dict(_split(line) for line in _logical_lines(text))


def load_properties(path: str, required: bool = False) -> dict:
    """Read ``key=value`` pairs from a properties file.

    A missing file yields an empty mapping and a warning unless
    ``required`` is set, in which case ConfigInvalid is raised.
    """
    if not os.path.exists(path):
        if required:
            raise ConfigInvalid(f"Properties file {path} not found")
        logger.warning("%s not found, using default values.", path)
        return {}
    try:
        with open(path, encoding="latin-1") as fp:
            text = fp.read()
    except OSError as exc:
        raise ConfigInvalid(f"Cannot read {path}: {exc}") from exc
    return parse_properties(text)


def _int(name: str, value) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigInvalid(f"{name} must be an integer, got {value!r}") from None


def _bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigInvalid(f"{name} must be a boolean, got {value!r}")


def resolve(args: argparse.Namespace, properties: Mapping[str, str]) -> Settings:
    """Merge parsed arguments over properties over defaults."""

    def pick(name, default):
        value = getattr(args, name, None)
        if value is not None:
            return value
        return properties.get(PROPERTY_PREFIX + name, default)

    settings = Settings(
        device=str(pick("device", DEFAULT_DEVICE)).strip(),
        timeout=_int("timeout", pick("timeout", DEFAULT_TIMEOUT)),
        port=_int("port", pick("port", DEFAULT_PORT)),
        listen=str(pick("listen", DEFAULT_LISTEN)).strip(),
        baud=_int("baud", pick("baud", DEFAULT_BAUD)),
        rtscts=_bool("rtscts", pick("rtscts", DEFAULT_RTSCTS)),
    )
    _validate(settings)
    return settings


def _validate(settings: Settings) -> None:
    """Raise ConfigInvalid on values the server cannot use."""
    if not settings.device:
        raise ConfigInvalid("Serial device must be non-empty")
    if settings.timeout < 0:
        raise ConfigInvalid("Timeout must not be negative")
    if not (1 <= settings.port <= 65535):
        raise ConfigInvalid("TCP port must be between 1 and 65535")
    if settings.baud <= 0:
        raise ConfigInvalid("Baud rate must be positive")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="serialserver",
        description="Provide access to a local serial port over the network.",
    )
    parser.add_argument(
        "device",
        nargs="?",
        help=f"Serial device or pyserial URL (default: {DEFAULT_DEVICE})",
    )
    parser.add_argument(
        "timeout",
        nargs="?",
        help=f"Device timeout in milliseconds (default: {DEFAULT_TIMEOUT})",
    )
    parser.add_argument(
        "port",
        nargs="?",
        help=f"TCP listen port (default: {DEFAULT_PORT})",
    )
    parser.add_argument(
        "--listen",
        help=f"TCP listen address (default: {DEFAULT_LISTEN})",
    )
    parser.add_argument(
        "--baud",
        help=f"Baud rate (default: {DEFAULT_BAUD})",
    )
    parser.add_argument(
        "--rtscts",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="RTS/CTS hardware flow control (default: on)",
    )
    parser.add_argument(
        "--properties",
        help=f"Properties file (default: {PROPERTIES_FILE})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v connection events, -vv traffic dumps)",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse the command line."""
    return build_parser().parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    """Resolve settings for parsed arguments, reading the properties file."""
    if args.properties:
        properties = load_properties(args.properties, required=True)
    else:
        properties = load_properties(PROPERTIES_FILE)
    return resolve(args, properties)
