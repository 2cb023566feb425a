#!/usr/bin/env python3
"""
Main CLI runner for adcount-bot.

This script orchestrates one worker process:
- Partitioning the eligible backlog and processing this worker's shard
- Recovering items stuck behind expired leases
- Importing work items and exporting results as versioned JSON
- Creating the database schema
"""

import argparse
import asyncio
import json
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

import requests
from playwright.async_api import Error as PlaywrightError
from sqlalchemy.exc import SQLAlchemyError

from db import ItemStore, create_session_factory, get_engine, init_db
from runner.logging_setup import configure_logging, get_logger
from scrape_ads import (
    AdCountWorker,
    ConfigError,
    LeaseManager,
    PartitionError,
    SessionPool,
    SessionPoolExhausted,
    WorkerConfig,
)


# Initialize logger
logger = get_logger("main")

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_UPLOAD_FAILURE = 1

UPLOAD_TIMEOUT_SECONDS = 30


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="adcount-bot: Scrape active-ads counters with a fleet of workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the work_items table
  adcount-bot init-db

  # Worker 2 of 4, three items at a time
  adcount-bot run --worker-index 2 --total-workers 4 --parallel 3

  # Only items that never produced a value, first 50
  adcount-bot run --only-missing --process-limit 50

  # Reset items left in_progress by a crashed worker
  adcount-bot recover

  # Load items
  adcount-bot import --input items.json

  # Dump results
  adcount-bot export --output results.json

  # Dump results and publish them
  adcount-bot export --output results.json --upload-url https://example.com/offers/update
        """,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Process this worker's shard of the backlog")

    partition_group = run_parser.add_argument_group("Partitioning Options")
    partition_group.add_argument(
        "--worker-index",
        type=int,
        help="This worker's index, 0-based (default: WORKER_INDEX or 0)",
    )
    partition_group.add_argument(
        "--total-workers",
        type=int,
        help="Number of workers in the run (default: TOTAL_WORKERS or 4)",
    )
    partition_group.add_argument(
        "--worker-id",
        type=str,
        help="Lease owner identifier (default: hostname-pid-timestamp)",
    )
    partition_group.add_argument(
        "--seed",
        type=str,
        dest="partition_seed",
        help="Shared shuffle seed; all workers of a run must use the same one (default: UTC date)",
    )
    partition_group.add_argument(
        "--process-limit",
        type=int,
        help="Process at most N items of the shard",
    )
    partition_group.add_argument(
        "--only-missing",
        action="store_true",
        default=None,
        help="Only items without an extracted value",
    )

    scrape_group = run_parser.add_argument_group("Scraping Options")
    scrape_group.add_argument(
        "--parallel",
        type=int,
        help="Initial items per batch (default: PARALLEL or 3)",
    )
    scrape_group.add_argument(
        "--retry-attempts",
        type=int,
        help="Reloads after a failed first attempt (default: RETRY_ATTEMPTS or 1)",
    )
    scrape_group.add_argument(
        "--max-fails",
        type=int,
        help="Failed runs before an item is soft-deleted (default: MAX_FAILS or 3)",
    )
    scrape_group.add_argument(
        "--headed",
        action="store_false",
        dest="headless",
        default=None,
        help="Show the browser window",
    )
    scrape_group.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Save rendered HTML of failed items to DEBUG_DIR",
    )

    subparsers.add_parser("recover", help="Reset items stuck behind expired leases")

    export_parser = subparsers.add_parser("export", help="Export items as versioned JSON")
    export_parser.add_argument(
        "--output",
        type=str,
        required=True,
        help="Output file path",
    )
    export_parser.add_argument(
        "--upload-url",
        type=str,
        help="POST the exported document to this URL (default: EXPORT_UPLOAD_URL)",
    )

    import_parser = subparsers.add_parser("import", help="Add work items from a JSON file")
    import_parser.add_argument(
        "--input",
        type=str,
        required=True,
        help='JSON list of {"name", "target_url"} objects (or an export document)',
    )

    subparsers.add_parser("init-db", help="Create the work_items table")

    return parser.parse_args(argv)


def build_config(args) -> WorkerConfig:
    """Environment configuration with command-line overrides applied."""
    config = WorkerConfig.from_env()
    if args.command != "run":
        return config

    overrides = {
        "worker_index": args.worker_index,
        "total_workers": args.total_workers,
        "worker_id": args.worker_id,
        "partition_seed": args.partition_seed,
        "process_limit": args.process_limit,
        "only_missing": args.only_missing,
        "parallel": args.parallel,
        "retry_attempts": args.retry_attempts,
        "max_fails": args.max_fails,
        "headless": args.headless,
        "debug": args.debug,
    }
    if args.parallel is not None:
        # Keep derived bounds in step with an explicit --parallel
        overrides["max_parallel"] = max(args.parallel, config.min_parallel)
        overrides["context_pool_size"] = args.parallel
    return config.with_overrides(**overrides)


def open_store(config: WorkerConfig):
    """
    Connect to the datastore.

    Returns:
        Tuple of (engine, ItemStore)

    Raises:
        RuntimeError: If DATABASE_URL is not configured
        SQLAlchemyError: If the database cannot be reached
    """
    engine = get_engine(config.database_url)
    with engine.connect():
        pass
    return engine, ItemStore(create_session_factory(engine))


async def run_worker(config: WorkerConfig, store: ItemStore, pool: SessionPool = None) -> int:
    """
    Start the context pool and process this worker's shard.

    Args:
        config: Worker configuration
        store: Item datastore
        pool: Context pool (default: Playwright-backed pool from config)

    Returns:
        Process exit code
    """
    try:
        pool = pool or SessionPool.from_config(config)
        worker = AdCountWorker(config, store, pool)
        items = worker.load_shard()
    except PartitionError as e:
        logger.error(f"Partition error: {e}")
        return EXIT_CONFIG_ERROR
    except SQLAlchemyError as e:
        logger.error(f"Could not read backlog: {e}")
        return EXIT_STARTUP_FAILURE

    if not items:
        logger.info("No items assigned to this worker")
        return EXIT_OK

    try:
        await pool.start()
    except (SessionPoolExhausted, PlaywrightError) as e:
        logger.error(f"Browser startup failed: {e}")
        await pool.shutdown()
        return EXIT_STARTUP_FAILURE

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/thread
            pass

    try:
        stats = await worker.run(items)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await pool.shutdown()

    logger.info(f"Pool stats: {pool.get_stats()}")
    logger.info(f"Concurrency stats: {worker.controller.stats()}")
    if stats.write_failures:
        logger.warning(f"{stats.write_failures} final state writes failed")
    return EXIT_OK


def run_recover(store: ItemStore) -> int:
    """Reset items stuck in_progress behind expired leases."""
    recovered = LeaseManager(store).recover_expired_leases()
    logger.info(f"Recovered {recovered} items")
    return EXIT_OK


def run_export(store: ItemStore, output: str, upload_url: str = None) -> int:
    """
    Write all items to a versioned JSON document, optionally publishing it.

    Format: {"version": "YYYY-MM-DD", "items": [...]}

    Args:
        store: Item datastore
        output: File to write
        upload_url: Endpoint that receives the document as a JSON POST

    Returns:
        Process exit code (1 if the upload failed; the file is kept)
    """
    rows = store.export_rows()
    document = {
        "version": datetime.now(timezone.utc).strftime("%Y-%m-%d"),
        "items": rows,
    }
    body = json.dumps(document, ensure_ascii=False, indent=2)

    path = Path(output)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(body)

    logger.info(f"Exported {len(rows)} items to {path}")

    if not upload_url:
        return EXIT_OK
    return upload_export(body, upload_url)


def upload_export(body: str, upload_url: str) -> int:
    """POST an export document; non-2xx responses and network errors fail."""
    logger.info(f"Uploading export to {upload_url}")
    try:
        response = requests.post(
            upload_url,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/json"},
            timeout=UPLOAD_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.error(f"Upload failed: {e}")
        return EXIT_UPLOAD_FAILURE

    if not 200 <= response.status_code < 300:
        logger.error(f"Upload rejected: {response.status_code} {response.reason}")
        logger.error(f"Server response: {response.text[:500]}")
        return EXIT_UPLOAD_FAILURE

    logger.info(f"Upload completed ({response.status_code})")
    return EXIT_OK


def run_import(store: ItemStore, input_path: str) -> int:
    """Insert work items from a JSON list or an export document."""
    with open(input_path, "r", encoding="utf-8") as f:
        document = json.load(f)

    entries = document.get("items", []) if isinstance(document, dict) else document
    rows = [
        {"name": entry.get("name"), "target_url": entry.get("target_url")}
        for entry in entries
        if isinstance(entry, dict)
    ]

    ids = store.add_items(rows)
    skipped = sum(1 for row in rows if not row["target_url"])
    logger.info(f"Imported {len(ids)} items from {input_path}")
    if skipped:
        logger.warning(f"{skipped} imported items have no target URL and will be skipped by workers")
    return EXIT_OK


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    logger.info("=" * 70)
    logger.info(f"adcount-bot - {args.command}")
    logger.info("=" * 70)

    try:
        config = build_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    configure_logging(log_dir=config.log_dir, log_level=config.log_level)

    if args.command == "run":
        for key, value in config.summary().items():
            logger.info(f"  {key}: {value}")

    try:
        engine, store = open_store(config)
        if args.command == "init-db":
            init_db(engine)
            return EXIT_OK
    except (RuntimeError, SQLAlchemyError) as e:
        logger.error(f"Datastore unavailable: {e}")
        return EXIT_STARTUP_FAILURE

    exit_code = EXIT_OK
    try:
        if args.command == "run":
            exit_code = asyncio.run(run_worker(config, store))
        elif args.command == "recover":
            exit_code = run_recover(store)
        elif args.command == "export":
            exit_code = run_export(store, args.output, args.upload_url or config.export_upload_url)
        elif args.command == "import":
            exit_code = run_import(store, args.input)

        if exit_code == EXIT_OK:
            logger.info("✓ Run completed successfully")

    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C)")
        exit_code = 130

    except Exception as e:
        logger.error("=" * 70)
        logger.error("FATAL ERROR")
        logger.error("=" * 70)
        logger.error(f"{e}", exc_info=True)
        exit_code = 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
