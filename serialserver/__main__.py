"""Entry point: load configuration and run the serial server."""

import logging
import sys

from serialserver.config import load_settings, parse_args
from serialserver.server import run_server

logger = logging.getLogger("serialserver")


def setup_logging(verbosity: int) -> None:
    """Configure logging based on verbosity level."""
    verbosity = min(verbosity, 2)
    level = (logging.WARNING, logging.INFO, logging.DEBUG)[verbosity]
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)
    try:
        settings = load_settings(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    try:
        run_server(settings)
    except OSError as e:
        logger.error("Cannot start server on %s:%s: %s", settings.listen, settings.port, e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
