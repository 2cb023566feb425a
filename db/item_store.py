"""
Work item datastore operations.

This module provides:
- Engine/session creation from DATABASE_URL
- Eligible backlog selection (soft-deleted items excluded)
- Conditional (compare-and-swap style) and plain row updates
- Bulk insert and export helpers
"""

import os
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base, ItemStatus, WorkItem
from runner.logging_setup import get_logger


logger = get_logger("item_store")


def get_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create a database engine.

    Args:
        database_url: SQLAlchemy URL (default: DATABASE_URL env var)

    Returns:
        SQLAlchemy Engine

    Raises:
        RuntimeError: If no database URL is configured
    """
    database_url = database_url or os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError("DATABASE_URL not set in environment")

    if database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False)

    return create_engine(
        database_url,
        pool_size=5,  # Each worker gets small pool
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        echo=False,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory whose objects stay readable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine):
    """Create the work_items table if it does not exist."""
    Base.metadata.create_all(engine)
    logger.info("Database schema initialized")


class ItemStore:
    """
    Row-oriented access to the work_items table.

    Every method runs in its own short transaction. Database errors are
    rolled back and re-raised; callers decide whether they are fatal.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def session(self) -> Session:
        return self._session_factory()

    def select_eligible(self, only_missing: bool = False) -> List[WorkItem]:
        """
        Select the backlog snapshot, ordered by id.

        Args:
            only_missing: Only items that never produced a value

        Returns:
            Detached WorkItem objects
        """
        stmt = (
            select(WorkItem)
            .where(WorkItem.deleted_at.is_(None))
            .where(
                (WorkItem.status.is_(None))
                | (WorkItem.status != ItemStatus.SOFT_DELETED)
            )
            .order_by(WorkItem.id.asc())
        )
        if only_missing:
            stmt = stmt.where(WorkItem.extracted_value.is_(None))

        with self._session_factory() as session:
            items = list(session.scalars(stmt).all())
            session.expunge_all()

        return items

    def get(self, item_id: int) -> Optional[WorkItem]:
        """Load a single item (detached), or None."""
        with self._session_factory() as session:
            item = session.get(WorkItem, item_id)
            if item is not None:
                session.expunge(item)
            return item

    def conditional_update(
        self,
        item_id: int,
        conditions: Sequence[Any],
        patch: Dict[str, Any],
    ) -> int:
        """
        Atomically update one row if it still matches the given conditions.

        Executes a single UPDATE ... WHERE id = :id AND <conditions>.

        Args:
            item_id: Row ID
            conditions: SQLAlchemy boolean clauses on WorkItem columns
            patch: Column values to write

        Returns:
            Number of rows affected (0 or 1)
        """
        stmt = (
            update(WorkItem)
            .where(WorkItem.id == item_id, *conditions)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        return self._execute(stmt)

    def update(self, item_id: int, patch: Dict[str, Any]) -> int:
        """Unconditionally update one row. Returns rows affected."""
        return self.conditional_update(item_id, (), patch)

    def update_where(self, conditions: Sequence[Any], patch: Dict[str, Any]) -> int:
        """Update every row matching the conditions. Returns rows affected."""
        stmt = (
            update(WorkItem)
            .where(*conditions)
            .values(**patch)
            .execution_options(synchronize_session=False)
        )
        return self._execute(stmt)

    def add_items(self, rows: Iterable[Dict[str, Any]]) -> List[int]:
        """Insert new work items. Returns their IDs in insertion order."""
        with self._session_factory() as session:
            try:
                items = [WorkItem(**row) for row in rows]
                session.add_all(items)
                session.flush()
                ids = [item.id for item in items]
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        return ids

    def export_rows(self) -> List[Dict[str, Any]]:
        """All items (soft-deleted included), most recently updated first."""
        stmt = select(WorkItem).order_by(
            WorkItem.updated_at.desc().nulls_last(), WorkItem.id.asc()
        )
        with self._session_factory() as session:
            return [item.to_dict() for item in session.scalars(stmt).all()]

    def _execute(self, stmt) -> int:
        with self._session_factory() as session:
            try:
                result = session.execute(stmt)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
            return result.rowcount
