#!/usr/bin/env python3
"""
Unit tests for logging configuration.

Tests:
- Per-logger rotating file under the configured directory
- LOG_DIR=none keeps loggers console-only
- Reconfiguring rebuilds loggers that already exist
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest

from runner.logging_setup import configure_logging, setup_logging


@pytest.fixture(autouse=True)
def console_only_afterwards():
    yield
    configure_logging(log_dir="none", log_level="INFO")


def _file_handlers(logger):
    return [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]


def test_file_handler_under_log_dir(tmp_path):
    configure_logging(log_dir=str(tmp_path), log_level="DEBUG")

    logger = setup_logging("ads_worker_9")

    handler, = _file_handlers(logger)
    assert Path(handler.baseFilename) == tmp_path / "ads_worker_9.log"
    assert handler.maxBytes == 10 * 1024 * 1024
    assert handler.backupCount == 5
    assert logger.level == logging.DEBUG


def test_none_disables_file_handler():
    configure_logging(log_dir="none")

    logger = setup_logging("ads_console_only")

    assert _file_handlers(logger) == []
    assert len(logger.handlers) == 1


def test_configure_rebuilds_existing_loggers(tmp_path):
    configure_logging(log_dir="none", log_level="INFO")
    logger = setup_logging("ads_rebuilt")
    assert _file_handlers(logger) == []

    configure_logging(log_dir=str(tmp_path / "logs"), log_level="WARNING")

    assert len(_file_handlers(logger)) == 1
    assert logger.level == logging.WARNING
    assert (tmp_path / "logs").is_dir()
