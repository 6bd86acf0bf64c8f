"""Logging setup for the libratobuf command line."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(log_file: Path | None = None, verbose: bool = False) -> logging.Logger:
    """Attach a handler to the libratobuf logger.

    Args:
        log_file: Write to this file (rotated at 10MB) instead of stderr.
        verbose: Log at DEBUG instead of INFO.

    Returns:
        The configured package logger.
    """
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = RotatingFileHandler(
            log_file, maxBytes=10*1024*1024, backupCount=5
        )
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger = logging.getLogger("libratobuf")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    # Avoid adding multiple handlers if re-initialized
    if not logger.handlers:
        logger.addHandler(handler)
    return logger
