from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

LOGGER_NAME = "echo_service"
LOG_FORMAT = "%(asctime)s %(message)s"
DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


def configure_logging(stream: Optional[TextIO] = None, level: int = logging.INFO) -> logging.Logger:
    """Route the service logger to stderr in the ``2006/01/02 15:04:05 msg`` layout."""
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
