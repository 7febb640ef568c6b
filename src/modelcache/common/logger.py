import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return a named logger writing to stdout.

    The level defaults to MODELCACHE_LOG_LEVEL (INFO when unset). Calling this
    twice for the same name does not stack handlers.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    level_name = (level or os.environ.get("MODELCACHE_LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    return logger
