#!/usr/bin/env python3
"""
Ad-count worker.

One worker process owns one shard of the backlog. It walks the shard in
batches whose size is set by the adaptive concurrency controller, and
processes every item of a batch concurrently:

    claim lease -> acquire context -> extract -> confirm possible block
    -> retries -> persist final state (clears lease) -> release context

A shutdown request stops new batches from starting; the current batch
drains normally so no item is left claimed.
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from db.item_store import ItemStore
from db.models import ItemStatus, WorkItem
from scrape_ads.ads_extract import AdCountExtractor, ExtractionResult, close_page, page_content
from scrape_ads.ads_monitor import BlockConfirmer, is_possibly_blocked
from scrape_ads.ads_stealth import random_delay_seconds
from scrape_ads.concurrency import AdaptiveConcurrencyController, ConcurrencyDecision
from scrape_ads.lease import LeaseManager
from scrape_ads.lifecycle import ItemLifecycle, ItemOutcome, ItemTransition, StatusLabels
from scrape_ads.partitioner import partition_backlog
from scrape_ads.retry import RetryController
from scrape_ads.session_pool import SessionPool
from scrape_ads.worker_config import WorkerConfig
from runner.logging_setup import setup_logging


@dataclass
class WorkerStats:
    """Counters for one worker run."""

    shard_size: int = 0
    batches: int = 0
    processed: int = 0
    success: int = 0
    no_counter: int = 0
    blocked: int = 0
    errors: int = 0
    soft_deleted: int = 0
    skipped: int = 0
    contended: int = 0
    write_failures: int = 0

    def record(self, transition: ItemTransition, outcome: ItemOutcome):
        self.processed += 1
        if transition.status == ItemStatus.SUCCESS:
            self.success += 1
            return
        if transition.soft_deleted:
            self.soft_deleted += 1
        if outcome.error is not None:
            self.errors += 1
        elif outcome.confirmed_blocked:
            self.blocked += 1
        else:
            self.no_counter += 1


def save_debug_html(html: str, item_id, note: str, debug_dir: str) -> Optional[str]:
    """
    Dump rendered HTML for later inspection.

    Returns:
        Path of the written file, or None on failure
    """
    try:
        Path(debug_dir).mkdir(parents=True, exist_ok=True)
        path = Path(debug_dir) / f"item-{item_id}-{int(time.time() * 1000)}.html"
        path.write_text(f"<!-- {note} -->\n{html}", encoding="utf-8")
        return str(path)
    except OSError:
        return None


class AdCountWorker:
    """Processes one worker's shard of work items."""

    def __init__(
        self,
        config: WorkerConfig,
        store: ItemStore,
        pool: SessionPool,
        extractor: Optional[AdCountExtractor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            config: Worker configuration
            store: Item datastore
            pool: Started context pool (owned by this worker)
            extractor: Extraction orchestrator (default: built from config)
            sleep: Async sleep used for pacing delays
        """
        self.config = config
        self.store = store
        self.pool = pool
        self.logger = setup_logging(f"ads_worker_{config.worker_index}")

        self.extractor = extractor or AdCountExtractor(config)
        self.leases = LeaseManager(store, ttl_seconds=config.lease_ttl_seconds)
        self.lifecycle = ItemLifecycle(
            store,
            max_fails=config.max_fails,
            labels=StatusLabels(
                blocked=config.status_blocked_label,
                no_counter=config.status_no_counter_label,
                error=config.status_error_label,
            ),
        )
        self.confirmer = BlockConfirmer(self.extractor, pool, config.block_indicators)
        self.retry = RetryController(
            max_attempts=config.retry_attempts,
            settle_ms=config.wait_time_ms,
            jitter_ms=config.wait_jitter_ms // 2,
            backoff_factor=config.retry_backoff_factor,
        )
        self.controller = AdaptiveConcurrencyController(
            initial=config.parallel,
            minimum=config.min_parallel,
            maximum=config.max_parallel,
            fail_high_water=config.fail_high_water,
            success_low_water=config.success_low_water,
        )

        self.stats = WorkerStats()
        self._sleep = sleep
        self._stopped = False

    def request_stop(self):
        """Stop starting new batches; the current batch finishes."""
        if not self._stopped:
            self.logger.warning("Shutdown requested - draining current batch")
        self._stopped = True

    @property
    def stopped(self) -> bool:
        return self._stopped

    def load_shard(self) -> List[WorkItem]:
        """
        Read the backlog and keep this worker's partition.

        Raises:
            PartitionError: On invalid worker index/count
            SQLAlchemyError: If the backlog cannot be read
        """
        backlog = self.store.select_eligible(only_missing=self.config.only_missing)
        shard = partition_backlog(
            backlog,
            self.config.worker_index,
            self.config.total_workers,
            seed=self.config.partition_seed,
        )
        if self.config.process_limit is not None:
            shard = shard[: self.config.process_limit]

        self.logger.info(
            f"Worker {self.config.worker_index} processing {len(shard)}/{len(backlog)} items "
            f"(seed={self.config.partition_seed})"
        )
        return shard

    async def run(self, items: Optional[List[WorkItem]] = None) -> WorkerStats:
        """
        Process the shard batch by batch.

        Args:
            items: Items to process (default: load_shard())

        Returns:
            WorkerStats
        """
        if items is None:
            items = self.load_shard()
        self.stats.shard_size = len(items)

        index = 0
        while index < len(items):
            if self._stopped:
                self.logger.warning(f"Stopped with {len(items) - index} items not started")
                break

            size = self.controller.current
            batch = items[index:index + size]
            index += len(batch)
            self.stats.batches += 1

            self.logger.info(
                f"Worker {self.config.worker_index} batch {self.stats.batches} "
                f"({len(batch)} items, parallel={size})"
            )
            await self.run_batch(batch, done_before=index - len(batch))

        self.logger.info(
            f"Worker {self.config.worker_index} finished: processed={self.stats.processed} "
            f"success={self.stats.success} no_counter={self.stats.no_counter} "
            f"blocked={self.stats.blocked} errors={self.stats.errors} "
            f"soft_deleted={self.stats.soft_deleted} skipped={self.stats.skipped} "
            f"contended={self.stats.contended}"
        )
        return self.stats

    async def run_batch(self, batch: List[WorkItem], done_before: int = 0) -> List[Optional[ItemOutcome]]:
        """Process one batch concurrently and feed outcomes to the controller."""
        results = await asyncio.gather(
            *(self.process_item(item) for item in batch),
            return_exceptions=True,
        )

        outcomes: List[Optional[ItemOutcome]] = []
        for item, result in zip(batch, results):
            if isinstance(result, BaseException):
                self.logger.error(f"[{item.id}] escaped item boundary: {result}")
                outcomes.append(None)
            else:
                outcomes.append(result)

        decision = self.controller.observe_batch(o.success for o in outcomes if o is not None)
        if decision == ConcurrencyDecision.DECREASE:
            await self.pool.recycle_all()

        self.logger.info(
            f"Progress: {done_before + len(batch)}/{self.stats.shard_size} | "
            f"consecutive_failures={self.controller.consecutive_failures} | "
            f"consecutive_successes={self.controller.consecutive_successes}"
        )

        every = self.config.long_pause_every
        done_after = done_before + len(batch)
        if every and done_after // every > done_before // every and done_after < self.stats.shard_size:
            pause = random_delay_seconds(30000, 45000)
            self.logger.info(f"Extra pause of {pause:.1f}s to reduce blocking risk")
            await self._sleep(pause)
        else:
            await self._sleep(random_delay_seconds(200, 400))

        return outcomes

    async def process_item(self, item: WorkItem) -> Optional[ItemOutcome]:
        """
        Run the full pipeline for one item.

        Returns:
            The item's outcome, or None if it was skipped (no URL, or the
            lease is held by another worker)
        """
        if not item.target_url:
            self.logger.warning(f"[{item.id}] skipping - no target URL")
            self.stats.skipped += 1
            return None

        try:
            claimed = self.leases.claim_item(item.id, self.config.worker_id)
        except SQLAlchemyError as e:
            self.logger.error(f"[{item.id}] claim failed: {e}")
            self.stats.skipped += 1
            return None

        if claimed is None:
            self.logger.debug(f"[{item.id}] claimed by another worker, skipping")
            self.stats.contended += 1
            return None

        outcome = None
        handle = None
        page = None
        try:
            handle = await self.pool.acquire_session()
            self.logger.info(f"[{item.id}] visiting {item.target_url} ({handle.identity.describe()})")
            page = await handle.new_page()
            outcome = await self._extract_item(item, handle, page)
        except Exception as e:
            self.logger.error(f"[{item.id}] unexpected error: {e}")
            outcome = ItemOutcome.failed(str(e) or type(e).__name__)
        finally:
            if outcome is None:
                outcome = ItemOutcome.failed("processing interrupted")
            if page is not None:
                await close_page(page)
            if handle is not None:
                await self.pool.release(handle)
            self._persist(item.id, claimed.attempts, outcome)

        await self._sleep(random_delay_seconds(200, 500))
        return outcome

    async def _extract_item(self, item: WorkItem, handle, page) -> ItemOutcome:
        result = await self.extractor.attempt_on_page(page, item.target_url, item_id=item.id)

        confirmed_blocked = False
        if is_possibly_blocked(result, self.config.block_indicators):
            result, confirmed_blocked = await self.confirmer.confirm(item, page, handle, result)

        if not result.found and not confirmed_blocked:
            result = await self.retry.run(page, item, result, self.extractor)

        if not result.found and self.config.debug:
            await self._dump_debug(item, page, result, "blocked" if confirmed_blocked else "no-counter-after-retries")

        return ItemOutcome(
            found=result.found,
            value=result.value,
            confirmed_blocked=confirmed_blocked and not result.found,
            raw=result.raw,
        )

    async def _dump_debug(self, item: WorkItem, page, result: ExtractionResult, note: str):
        html = result.content or await page_content(page)
        if not html:
            return
        path = save_debug_html(html, item.id, note, self.config.debug_dir)
        if path:
            self.logger.info(f"[{item.id}] debug HTML saved: {path}")

    def _persist(self, item_id: int, prior_attempts: Optional[int], outcome: ItemOutcome):
        """Write the final state; fall back to a bare lease release."""
        try:
            transition = self.lifecycle.apply(
                item_id, prior_attempts, outcome, worker_id=self.config.worker_id
            )
        except Exception as e:
            self.stats.write_failures += 1
            self.logger.error(f"[{item_id}] final state write failed: {e}")
            try:
                self.leases.release(item_id, self.config.worker_id)
            except Exception as release_error:
                self.logger.error(f"[{item_id}] lease release failed, lease will expire: {release_error}")
            return

        self.stats.record(transition, outcome)
