"""
Per-item processing leases.

A lease is the exclusive, time-bounded right of one worker to process one
work item. Claiming is a single conditional UPDATE on the item row, so
exactly one of several concurrent claimers can win. An expired lease can be
claimed again without an explicit release.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from db.item_store import ItemStore
from db.models import ItemStatus, WorkItem
from runner.logging_setup import get_logger


logger = get_logger("ads_lease")


@dataclass(frozen=True)
class Lease:
    """Owner and expiry of an item lease."""

    owner: Optional[str]
    expires_at: Optional[datetime]

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """True if someone holds the lease and it has not expired."""
        if self.owner is None or self.expires_at is None:
            return False
        now = now or datetime.utcnow()
        return self.expires_at >= now


def claimable_conditions(now: datetime):
    """
    WHERE clauses for a row that may be claimed at `now`.

    Not soft-deleted and no live lease. Any other status is claimable,
    including configured failure labels and in_progress rows whose lease
    expired or was released.
    """
    lease_free = or_(
        WorkItem.lease_expires_at.is_(None),
        WorkItem.lease_expires_at < now,
    )
    not_soft_deleted = or_(
        WorkItem.status.is_(None),
        WorkItem.status != ItemStatus.SOFT_DELETED,
    )
    return (WorkItem.deleted_at.is_(None), lease_free, not_soft_deleted)


def held_or_free_conditions(worker_id: str, now: datetime):
    """WHERE clause for a row whose lease is held by `worker_id` or by nobody."""
    return (
        or_(
            WorkItem.lease_owner == worker_id,
            WorkItem.lease_owner.is_(None),
            WorkItem.lease_expires_at.is_(None),
            WorkItem.lease_expires_at < now,
        ),
    )


class LeaseManager:
    """Claims and releases item leases through the item store."""

    def __init__(self, store: ItemStore, ttl_seconds: int = 900):
        """
        Args:
            store: Item datastore
            ttl_seconds: Default lease duration; must exceed the worst-case
                processing time of one item
        """
        self.store = store
        self.ttl_seconds = ttl_seconds

    def try_claim(
        self,
        item_id: int,
        worker_id: str,
        ttl: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically claim an item.

        Sets status=in_progress, lease_owner=worker_id and
        lease_expires_at=now+ttl if, and only if, the row is claimable.

        Args:
            item_id: Item to claim
            worker_id: Claiming worker identifier
            ttl: Lease duration in seconds (default: manager TTL)
            now: Current time (default: utcnow)

        Returns:
            True if this worker now holds the lease
        """
        now = now or datetime.utcnow()
        ttl = self.ttl_seconds if ttl is None else ttl

        rows = self.store.conditional_update(
            item_id,
            claimable_conditions(now),
            {
                "status": ItemStatus.IN_PROGRESS,
                "lease_owner": worker_id,
                "lease_expires_at": now + timedelta(seconds=ttl),
                "updated_at": now,
            },
        )

        if rows == 1:
            logger.debug(f"[{item_id}] claimed by {worker_id} for {ttl}s")
            return True

        logger.debug(f"[{item_id}] not claimable (held by another worker or not eligible)")
        return False

    def claim_item(self, item_id: int, worker_id: str, ttl: Optional[int] = None) -> Optional[WorkItem]:
        """
        Claim an item and read it back under the lease.

        The returned row carries the attempts counter as of the claim, which
        may be newer than a backlog snapshot taken before the run started.

        Returns:
            The claimed WorkItem, or None if the item could not be claimed

        Raises:
            SQLAlchemyError: If the claim or the read fails (a lease taken
                before a failed read is released first)
        """
        if not self.try_claim(item_id, worker_id, ttl=ttl):
            return None

        try:
            item = self.store.get(item_id)
        except SQLAlchemyError:
            self.release(item_id, worker_id)
            raise

        if item is None:
            logger.warning(f"[{item_id}] vanished right after claim")
        return item

    def release(self, item_id: int, worker_id: Optional[str] = None) -> bool:
        """
        Clear the lease without touching status.

        Args:
            item_id: Item to release
            worker_id: Only release if this worker still owns the lease

        Returns:
            True if a row was updated
        """
        conditions = []
        if worker_id is not None:
            conditions.append(WorkItem.lease_owner == worker_id)

        rows = self.store.conditional_update(
            item_id,
            conditions,
            {"lease_owner": None, "lease_expires_at": None},
        )
        if rows:
            logger.debug(f"[{item_id}] lease released")
        return rows == 1

    def current_lease(self, item_id: int) -> Optional[Lease]:
        """Read the item's lease, or None if the item does not exist."""
        item = self.store.get(item_id)
        if item is None:
            return None
        return Lease(owner=item.lease_owner, expires_at=item.lease_expires_at)

    def recover_expired_leases(self, now: Optional[datetime] = None) -> int:
        """
        Reset items stuck in_progress behind an expired lease to pending.

        Expired leases are claimable anyway; this sweep keeps status
        reports accurate after a crashed worker.

        Returns:
            Number of items recovered
        """
        now = now or datetime.utcnow()
        recovered = self.store.update_where(
            (
                WorkItem.status == ItemStatus.IN_PROGRESS,
                WorkItem.deleted_at.is_(None),
                or_(WorkItem.lease_expires_at.is_(None), WorkItem.lease_expires_at < now),
            ),
            {
                "status": ItemStatus.PENDING,
                "lease_owner": None,
                "lease_expires_at": None,
                "updated_at": now,
            },
        )

        if recovered:
            logger.warning(f"Recovered {recovered} items with expired leases")
        else:
            logger.info("No orphaned items found")
        return recovered
