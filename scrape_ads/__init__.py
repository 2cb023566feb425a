"""
Ad library active-ads scraper for adcount-bot.

Multi-worker strategy:
- Seeded Fisher-Yates partitioning of the backlog across workers
- Per-item leases via conditional row updates
- Rotated browser contexts with heavy-resource blocking
- Block confirmation on a second context before recording a block
- Bounded in-process retries and adaptive batch concurrency
- Soft-delete after repeated failed runs

Modules:
- partitioner: backlog sharding
- session_pool: pooled Playwright contexts
- lease: item claiming and release
- ads_extract: counter extraction strategies
- ads_monitor: block detection and confirmation
- retry: in-process retries
- concurrency: adaptive batch sizing
- lifecycle: persisted item state transitions
- worker: the batch loop tying it together
"""

from scrape_ads.worker_config import ConfigError, WorkerConfig
from scrape_ads.partitioner import (
    PartitionError,
    chunk_sizes,
    fisher_yates_shuffle,
    partition_backlog,
)
from scrape_ads.ads_extract import (
    AdCountExtractor,
    ExtractionResult,
    parse_count_from_text,
)
from scrape_ads.ads_monitor import BlockConfirmer, classify, detect_blocking
from scrape_ads.concurrency import AdaptiveConcurrencyController
from scrape_ads.lease import Lease, LeaseManager
from scrape_ads.lifecycle import ItemLifecycle, ItemOutcome, compute_transition
from scrape_ads.retry import RetryController
from scrape_ads.session_pool import SessionPool, SessionPoolExhausted
from scrape_ads.worker import AdCountWorker, WorkerStats

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "WorkerConfig",
    "PartitionError",
    "chunk_sizes",
    "fisher_yates_shuffle",
    "partition_backlog",
    "AdCountExtractor",
    "ExtractionResult",
    "parse_count_from_text",
    "BlockConfirmer",
    "classify",
    "detect_blocking",
    "AdaptiveConcurrencyController",
    "Lease",
    "LeaseManager",
    "ItemLifecycle",
    "ItemOutcome",
    "compute_transition",
    "RetryController",
    "SessionPool",
    "SessionPoolExhausted",
    "AdCountWorker",
    "WorkerStats",
]
