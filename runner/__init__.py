"""
Runner module for adcount-bot.

This module contains:
- The worker CLI entry point
- Logging setup
"""

from runner.logging_setup import configure_logging, setup_logging, get_logger

__version__ = "0.1.0"

__all__ = [
    "configure_logging",
    "setup_logging",
    "get_logger",
]
