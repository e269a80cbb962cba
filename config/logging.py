"""
Logging for the crosswalk engine.

Every module logs through the shared ``crosswalk`` logger. Job and stage
messages go to stdout; the rotating file under ``LOG_DIR`` keeps DEBUG
detail (stage traces, cache hits, token usage) for later audit.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config.settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries log every request at INFO
NOISY_LOGGERS = ("anthropic", "httpx", "httpcore", "urllib3", "sqlalchemy.engine")


def setup_logging(name: str = "crosswalk", log_to_file: bool | None = None) -> logging.Logger:
    """
    Configure and return the named logger.

    Args:
        name: Logger name, also used for the log file name
        log_to_file: Override ``settings.LOG_TO_FILE``

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    logger.propagate = False

    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if settings.LOG_TO_FILE if log_to_file is None else log_to_file:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / f"{name}.log", maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


# Default logger
logger = setup_logging()
