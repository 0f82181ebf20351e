"""Package logger: console plus a rotating file under the configured log dir.

Worker threads are named per job (``job3_0``), so the thread name goes in every line.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Union

LOGGER_NAME = "chapter_mirror"
LOG_FILE = "chapter_mirror.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(threadName)s): %(message)s"

# httpx logs every request at INFO; the retry stage already reports failures
NOISY_LOGGERS = ("httpx", "httpcore")


def resolve_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    """Accept ``logging.DEBUG``, ``"debug"`` or ``None``; unknown names fall back to ``default``."""
    if level is None:
        return default
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    return value if isinstance(value, int) else default


def setup_logger(log_dir: str = "logs", level: Union[int, str, None] = logging.INFO,
                 max_bytes: int = 10 * 1024 * 1024, backup_count: int = 5) -> logging.Logger:
    level = resolve_level(level)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    os.makedirs(log_dir, exist_ok=True)
    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    for handler in (
        logging.StreamHandler(),
        RotatingFileHandler(os.path.join(log_dir, LOG_FILE),
                            maxBytes=max_bytes, backupCount=backup_count),
    ):
        handler.setLevel(level)
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    return logger
