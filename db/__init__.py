"""
Database module for adcount-bot.

This module handles:
- Database connection management
- SQLAlchemy models
- Work item row operations
"""

from db.models import Base, ItemStatus, WorkItem
from db.item_store import (
    ItemStore,
    create_session_factory,
    get_engine,
    init_db,
)

__version__ = "0.1.0"

__all__ = [
    "Base",
    "ItemStatus",
    "WorkItem",
    "ItemStore",
    "create_session_factory",
    "get_engine",
    "init_db",
]
