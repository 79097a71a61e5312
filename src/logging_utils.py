"""Logging setup shared by the tracker process and its helpers."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# Rotate log after ~100KB (approx 500 lines), keep 1 backup
LOG_MAX_BYTES = 100000
LOG_BACKUP_COUNT = 1


def _log_path(filename: str) -> str:
    os.makedirs(LOG_DIR, exist_ok=True)
    return os.path.join(LOG_DIR, filename)


def configure_root_logger(filename: str, level: int = logging.INFO) -> None:
    """Send root logging to a rotating file plus stderr."""
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            RotatingFileHandler(
                _log_path(filename),
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
            ),
            logging.StreamHandler(),
        ],
    )


def get_file_logger(name: str, filename: str, level: int = logging.DEBUG) -> logging.Logger:
    """
    Return a module logger that also writes to its own rotating file.

    The handler is attached once, so repeated imports do not duplicate lines.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(level)
        handler = RotatingFileHandler(
            _log_path(filename),
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
