"""
Logging setup for the shortener service.

All modules use:
    import logging
    logger = logging.getLogger(__name__)
"""

from __future__ import annotations

import logging
import sys


def setup_logging(level: int = logging.INFO) -> None:
    """
    Attach a stdout handler to the ``shortener`` logger tree.

    Safe to call more than once; later calls only adjust the level.
    """
    root_logger = logging.getLogger("shortener")
    root_logger.setLevel(level)

    # Prevent duplicate handlers on repeated calls
    if root_logger.handlers:
        return

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
