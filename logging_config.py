"""
logging_config.py: central logging setup for the storefront API.

Every module logs through `get_logger(__name__)`; `setup_logging()` is called once
by the application entry point (and by the batch jobs) so the format and handlers
are the same everywhere.
"""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """
    Configures the root logger.

    Args:
        level (str): Log level name, e.g. "INFO" or "DEBUG".
        log_file (str | None): Optional file path; console output is always on.
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    # Driver chatter
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def get_logger(name):
    """Returns the logger for a module, normally called with `__name__`."""
    return logging.getLogger(name)
