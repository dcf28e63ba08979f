"""Root logger setup shared by the API and the CLI."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Union

from tool_warden import constants
from tool_warden.utils.pathing import ensure_runtime_directories

# Held at WARNING.
QUIET_LOGGERS = ("httpx", "sqlalchemy.engine")


def setup_logging(level: Union[int, str] = logging.INFO, *, console: bool = True) -> Path:
    """Route records to the rotating warden log, plus stderr when ``console`` is set.

    Returns the log file path.
    """
    log_file = ensure_runtime_directories()["logs"] / constants.LOG_FILE_NAME
    formatter = logging.Formatter(constants.LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers: List[logging.Handler] = [
        RotatingFileHandler(log_file, maxBytes=constants.LOG_MAX_BYTES, backupCount=constants.LOG_BACKUP_COUNT)
    ]
    if console:
        handlers.append(logging.StreamHandler())

    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file
