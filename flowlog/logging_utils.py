"""Logging helpers."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILENAME = "flowlog.log"


def setup_logging(level: Union[str, int] = "INFO",
                  log_file: Optional[Path] = None) -> logging.Logger:
    """Configure the ``flowlog`` logger hierarchy.

    Messages go to stderr so they land in the systemd journal, and
    optionally to a rotating file. Calling this again replaces the handlers
    installed by a previous call.

    Args:
        level: Level name or number
        log_file: Path of the rotating log file, or None for stderr only

    Returns:
        The configured ``flowlog`` logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("flowlog")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(fmt)
    logger.addHandler(stream)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=3)
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    logger.propagate = False
    return logger
