import logging
import sys
from typing import Optional

from ..config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Logger for a fitchallenge module, writing to stdout.

    ``level`` falls back to ``LOG_LEVEL``. Records still propagate to the root
    logger, so worker and test handlers see them too.
    """
    level_no = logging.getLevelName((level or settings.log_level).upper())
    logger = logging.getLogger(name)
    logger.setLevel(level_no)

    if not any(isinstance(h, logging.StreamHandler) and h.stream is sys.stdout for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
