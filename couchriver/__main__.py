"""
Run a CouchDB river in the foreground.

Configuration comes from the environment / .env (see couchriver.config).

    python -m couchriver [--reset]
"""

import argparse
import logging
import sys

from .config import get_settings
from .connectors.cdc import CheckpointError
from .river import CouchDBRiver
from .utils.logging import get_logger


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Stream a CouchDB _changes feed into OpenSearch")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete the stored checkpoint and start from the beginning of the feed"
    )
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValueError as e:
        get_logger("couchriver").error(f"Invalid configuration: {e}")
        return 2

    logger = get_logger("couchriver", getattr(logging, settings.river.log_level.upper(), logging.INFO))

    try:
        river = CouchDBRiver(settings)
    except ValueError as e:
        logger.error(f"Invalid river configuration: {e}")
        return 2

    if args.reset:
        try:
            river.reset()
        except CheckpointError as e:
            logger.error(f"Failed to reset checkpoint: {e}", extra={"database": settings.couchdb.database})
            return 1

    river.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
