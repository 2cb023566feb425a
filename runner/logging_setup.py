"""
Logging setup for adcount-bot.

Every component logger (main, item_store, ads_lease, ads_worker_<index>, ...)
writes to stdout and, unless LOG_DIR is "none", to its own rotating file
under LOG_DIR. Settings start from the environment and are replaced by the
worker configuration once the CLI has loaded it (configure_logging).
"""

import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

from dotenv import load_dotenv


# Load environment
load_dotenv()

CONSOLE_FORMAT = "%(levelname)s - %(name)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

_settings = {
    "log_dir": os.getenv("LOG_DIR", "logs"),
    "log_level": os.getenv("LOG_LEVEL", "INFO"),
}

# Loggers built here, rebuilt when the settings change
_managed = set()


def file_logging_enabled(log_dir: Optional[str]) -> bool:
    return bool(log_dir) and log_dir.lower() != "none"


def configure_logging(log_dir: Optional[str] = None, log_level: Optional[str] = None):
    """
    Apply process-wide logging settings and rebuild existing loggers.

    Args:
        log_dir: Directory for per-logger files, or "none" for console only
        log_level: Level name (DEBUG, INFO, ...)
    """
    if log_dir is not None:
        _settings["log_dir"] = log_dir
    if log_level is not None:
        _settings["log_level"] = log_level

    for name in sorted(_managed):
        setup_logging(name)


def setup_logging(
    name: str = "adcount-bot",
    log_level: str = None,
    log_file: str = None,
) -> logging.Logger:
    """
    Build a logger with a console handler and an optional rotating file.

    Args:
        name: Logger name (default: "adcount-bot")
        log_level: Level name (default: configured level)
        log_file: Log file path (default: <log_dir>/{name}.log)

    Returns:
        Configured logger instance
    """
    log_level = (log_level or _settings["log_level"]).upper()
    numeric_level = getattr(logging, log_level, logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    log_dir = _settings["log_dir"]
    if log_file is None and file_logging_enabled(log_dir):
        log_file = Path(log_dir) / f"{name}.log"

    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        logger.addHandler(file_handler)

    _managed.add(name)
    logger.debug(f"Logging initialized: level={log_level}, file={log_file}")

    return logger


def get_logger(name: str = "adcount-bot") -> logging.Logger:
    """Get a logger, building it on first use."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        setup_logging(name)
    return logger
