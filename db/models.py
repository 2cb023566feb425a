"""
Database models for adcount-bot using SQLAlchemy 2.0 style.

Models:
- WorkItem: One ad-library page whose active-ads counter is scraped,
  together with its lifecycle status and processing lease.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ItemStatus:
    """Status values stored in work_items.status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    NO_COUNTER = "no_counter"
    BLOCKED = "blocked"
    ERROR = "error"
    SOFT_DELETED = "soft_deleted"


class WorkItem(Base):
    """
    Scrape work item (one ad library URL).

    Attributes:
        id: Primary key, also the ordering key for partitioning
        name: Display name of the tracked offer
        target_url: Page to render; items without one are skipped
        status: Lifecycle status (see ItemStatus)
        attempts: Cross-run failure counter, reset to 0 on success
        extracted_value: Last successfully extracted counter value
        last_error: Diagnostic message of the last failed run
        lease_owner: Worker ID currently holding the processing lease
        lease_expires_at: When the processing lease expires
        deleted_at: Soft delete timestamp (item excluded from future runs)
        created_at: Record creation timestamp
        updated_at: Last state mutation timestamp
    """

    __tablename__ = "work_items"

    # Primary Key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    target_url: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True,
        comment="Ad library URL to render"
    )

    # Lifecycle
    status: Mapped[Optional[str]] = mapped_column(
        String(32), nullable=True, default=ItemStatus.PENDING, index=True,
        comment="pending, in_progress, success, no_counter, blocked, error, soft_deleted"
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
        comment="Consecutive failed runs"
    )
    extracted_value: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True,
        comment="Active ads count from the last successful run"
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lease
    lease_owner: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True,
        comment="Worker ID holding the processing lease"
    )
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True,
        comment="Lease expiry; an expired lease may be claimed again"
    )

    # Soft delete
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, index=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_work_items_status_lease", "status", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WorkItem(id={self.id}, status='{self.status}', "
            f"attempts={self.attempts}, value={self.extracted_value})>"
        )

    def to_dict(self) -> dict:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "target_url": self.target_url,
            "status": self.status,
            "attempts": self.attempts,
            "extracted_value": self.extracted_value,
            "last_error": self.last_error,
            "lease_owner": self.lease_owner,
            "lease_expires_at": self.lease_expires_at.isoformat() if self.lease_expires_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
