"""
Work item lifecycle.

The only component that writes an item's final state after processing:

- found                       -> success, value stored, attempts reset to 0
- confirmed block             -> attempts + 1; blocked, or soft_deleted at max_fails
- no counter after retries    -> attempts + 1; no_counter, or soft_deleted at max_fails
- unexpected processing error -> attempts + 1; error, or soft_deleted at max_fails

Every transition clears the lease. blocked/no_counter/error differ only
for operator triage; they count toward the same threshold.

When a worker id is given, the write only clears a lease that this worker
still holds (or that nobody holds). If another worker took the item over
after this lease expired, the state columns are written but its lease is
left alone.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from db.item_store import ItemStore
from db.models import ItemStatus
from runner.logging_setup import get_logger
from scrape_ads.lease import held_or_free_conditions

logger = get_logger("ads_lifecycle")


class LifecycleWriteError(RuntimeError):
    """Neither the full nor the reduced final-state write succeeded."""


@dataclass(frozen=True)
class StatusLabels:
    """Diagnostic labels written for the failure branches."""

    blocked: str = ItemStatus.BLOCKED
    no_counter: str = ItemStatus.NO_COUNTER
    error: str = ItemStatus.ERROR


@dataclass
class ItemOutcome:
    """Final per-item outcome handed to the lifecycle."""

    found: bool
    value: Optional[int] = None
    confirmed_blocked: bool = False
    error: Optional[str] = None
    raw: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.found

    @classmethod
    def failed(cls, error: str) -> "ItemOutcome":
        """Outcome for an unexpected exception during processing."""
        return cls(found=False, confirmed_blocked=False, error=error)


@dataclass
class ItemTransition:
    """Persisted state computed for an item."""

    status: str
    attempts: int
    extracted_value: Optional[int]
    deleted_at: Optional[datetime]
    updated_at: datetime
    last_error: Optional[str] = None

    @property
    def soft_deleted(self) -> bool:
        return self.status == ItemStatus.SOFT_DELETED

    def to_patch(self) -> Dict[str, Any]:
        """Full column patch, lease cleared."""
        patch = {
            "status": self.status,
            "attempts": self.attempts,
            "extracted_value": self.extracted_value,
            "updated_at": self.updated_at,
            "last_error": self.last_error,
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if self.deleted_at is not None:
            patch["deleted_at"] = self.deleted_at
        return patch


def compute_transition(
    prior_attempts: Optional[int],
    outcome: ItemOutcome,
    max_fails: int,
    now: Optional[datetime] = None,
    labels: StatusLabels = StatusLabels(),
) -> ItemTransition:
    """
    Compute an item's next persisted state.

    Args:
        prior_attempts: Item's attempts before this run (None counts as 0)
        outcome: Final processing outcome
        max_fails: Failed runs after which the item is soft-deleted
        now: Transition time (default: utcnow)
        labels: Diagnostic status labels

    Returns:
        ItemTransition
    """
    now = now or datetime.utcnow()

    if outcome.found:
        return ItemTransition(
            status=ItemStatus.SUCCESS,
            attempts=0,
            extracted_value=outcome.value,
            deleted_at=None,
            updated_at=now,
        )

    new_attempts = int(prior_attempts or 0) + 1

    if outcome.error is not None:
        failure_label = labels.error
        last_error = outcome.error
    elif outcome.confirmed_blocked:
        failure_label = labels.blocked
        last_error = "block confirmed"
    else:
        failure_label = labels.no_counter
        last_error = "counter not found after retries"

    if new_attempts >= max_fails:
        return ItemTransition(
            status=ItemStatus.SOFT_DELETED,
            attempts=new_attempts,
            extracted_value=None,
            deleted_at=now,
            updated_at=now,
            last_error=last_error,
        )

    return ItemTransition(
        status=failure_label,
        attempts=new_attempts,
        extracted_value=None,
        deleted_at=None,
        updated_at=now,
        last_error=last_error,
    )


class ItemLifecycle:
    """Writes computed transitions to the item store."""

    def __init__(self, store: ItemStore, max_fails: int = 3, labels: StatusLabels = StatusLabels()):
        self.store = store
        self.max_fails = max_fails
        self.labels = labels

    def fallback_label(self, outcome: ItemOutcome) -> str:
        if outcome.error is not None:
            return self.labels.error
        if outcome.confirmed_blocked:
            return self.labels.blocked
        return self.labels.no_counter

    def apply(
        self,
        item_id: int,
        prior_attempts: Optional[int],
        outcome: ItemOutcome,
        now: Optional[datetime] = None,
        worker_id: Optional[str] = None,
    ) -> ItemTransition:
        """
        Compute and persist an item's final state, clearing its lease.

        If the full write fails, a reduced write (no deleted_at, failure
        label instead of soft_deleted) is attempted.

        Args:
            item_id: Item to update
            prior_attempts: attempts as read under this worker's lease
            outcome: Final processing outcome
            now: Transition time (default: utcnow)
            worker_id: Lease owner; when given, another worker's live lease
                is never cleared

        Returns:
            The transition that was computed

        Raises:
            LifecycleWriteError: If both writes failed
        """
        now = now or datetime.utcnow()
        transition = compute_transition(prior_attempts, outcome, self.max_fails, now, self.labels)

        try:
            rows = self._write(item_id, transition.to_patch(), worker_id, now)
        except SQLAlchemyError as e:
            logger.warning(f"[{item_id}] DB update '{transition.status}' failed: {e} "
                           f"- falling back to update attempts/status")
        else:
            self._log_transition(item_id, transition, rows)
            return transition

        reduced = transition.to_patch()
        reduced.pop("deleted_at", None)
        if transition.soft_deleted:
            reduced["status"] = self.fallback_label(outcome)

        try:
            rows = self._write(item_id, reduced, worker_id, now)
        except SQLAlchemyError as e:
            logger.error(f"[{item_id}] fallback update also failed: {e}")
            raise LifecycleWriteError(str(e)) from e

        logger.info(f"[{item_id}] fallback update succeeded ({reduced['status']}, rows={rows})")
        return transition

    def _write(self, item_id: int, patch: Dict[str, Any], worker_id: Optional[str], now: datetime) -> int:
        if worker_id is None:
            return self.store.update(item_id, patch)

        rows = self.store.conditional_update(item_id, held_or_free_conditions(worker_id, now), patch)
        if rows:
            return rows

        # Re-claimed by another worker after our lease expired: keep its lease
        state = {k: v for k, v in patch.items() if k not in ("lease_owner", "lease_expires_at")}
        rows = self.store.update(item_id, state)
        if rows:
            logger.warning(f"[{item_id}] lease lost to another worker; state written, its lease kept")
        return rows

    def _log_transition(self, item_id: int, transition: ItemTransition, rows: int):
        if transition.status == ItemStatus.SUCCESS:
            logger.info(f"[{item_id}] success, value={transition.extracted_value} (rows={rows})")
        elif transition.soft_deleted:
            logger.warning(f"[{item_id}] attempts={transition.attempts} >= {self.max_fails} "
                           f"-> soft-deleted ({transition.last_error})")
        else:
            logger.warning(f"[{item_id}] {transition.status}, attempts={transition.attempts} "
                           f"({transition.last_error})")
