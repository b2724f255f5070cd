"""
Logging Setup

The nxml modules log through ``logging.getLogger(__name__)`` and never touch
handlers themselves. Applications call setup_logging() once to route those
records to stdout.
"""

import logging
import sys


def setup_logging(level: int = logging.INFO) -> None:
    """
    Configure the root logger for applications built on nxml.

    Uses the format "timestamp - logger name - level - message" and writes
    to stdout. The library itself only creates module loggers and never
    calls this.
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
