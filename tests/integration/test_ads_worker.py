#!/usr/bin/env python3
"""
Integration tests for the ad-count worker pipeline.

Runs AdCountWorker against an in-memory database and fake browser
contexts:
- Success, no-counter and confirmed-block outcomes in one run
- Items without URL and items leased by another worker are skipped
- Unexpected exceptions become the error transition
- Graceful stop drains the current batch only
- Failure streaks lower concurrency and refresh contexts
- Custom failure labels still reach soft delete across runs
- attempts is read under the lease, not from the backlog snapshot
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import FakeSite, Render, empty, forbidden, found
from db.models import ItemStatus
from scrape_ads.lease import LeaseManager
from scrape_ads.worker import AdCountWorker, save_debug_html


pytestmark = pytest.mark.integration


def _run(worker, pool, items=None):
    async def scenario():
        await pool.start()
        try:
            return await worker.run(items)
        finally:
            await pool.shutdown()

    return asyncio.run(scenario())


def test_end_to_end_outcomes(config, store, add_items, make_pool, no_sleep):
    a, b, c = add_items(
        {"name": "A", "target_url": "https://ads.example/a"},
        {"name": "B", "target_url": "https://ads.example/b"},
        {"name": "C", "target_url": "https://ads.example/c"},
    )
    site = FakeSite({
        a.target_url: [found("~12")],
        b.target_url: [empty()],
        c.target_url: [forbidden()],
    })
    pool = make_pool(site, pool_size=2)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    stats = _run(worker, pool)

    row_a, row_b, row_c = (store.get(i.id) for i in (a, b, c))
    assert (row_a.status, row_a.extracted_value, row_a.attempts) == (ItemStatus.SUCCESS, 12, 0)
    assert (row_b.status, row_b.attempts) == (ItemStatus.NO_COUNTER, 1)
    assert (row_c.status, row_c.attempts) == (ItemStatus.BLOCKED, 1)
    assert all(row.lease_owner is None and row.lease_expires_at is None for row in (row_a, row_b, row_c))

    # b: first attempt + one retry; c: first attempt + confirmation, no retry
    assert site.visits[b.target_url] == 2
    assert site.visits[c.target_url] == 2

    assert stats.shard_size == 3
    assert stats.batches == 2
    assert (stats.success, stats.no_counter, stats.blocked) == (1, 1, 1)


def test_block_false_positive_recorded_as_success(config, store, add_items, make_pool, no_sleep):
    item, = add_items({"target_url": "https://ads.example/flaky", "attempts": 1})
    site = FakeSite({item.target_url: [forbidden(), found("~30")]})
    pool = make_pool(site, pool_size=2)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    _run(worker, pool)

    row = store.get(item.id)
    assert row.status == ItemStatus.SUCCESS
    assert row.extracted_value == 30
    assert row.attempts == 0


def test_confirmed_block_at_threshold_soft_deletes(config, store, add_items, make_pool, no_sleep):
    item, = add_items({"target_url": "https://ads.example/banned", "attempts": 2})
    site = FakeSite({item.target_url: [forbidden()]})
    pool = make_pool(site, pool_size=2)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    stats = _run(worker, pool)

    row = store.get(item.id)
    assert row.status == ItemStatus.SOFT_DELETED
    assert row.attempts == 3
    assert row.deleted_at is not None
    assert row.extracted_value is None
    assert stats.soft_deleted == 1
    assert store.select_eligible() == []


def test_item_without_url_is_skipped(config, store, add_items, make_pool, no_sleep):
    item, = add_items({"name": "no url"})
    pool = make_pool(FakeSite(), pool_size=1)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    stats = _run(worker, pool)

    row = store.get(item.id)
    assert row.status == ItemStatus.PENDING
    assert row.attempts == 0
    assert row.lease_owner is None
    assert stats.skipped == 1
    assert stats.processed == 0


def test_item_leased_elsewhere_is_skipped(config, store, add_items, make_pool, no_sleep):
    item, = add_items({"target_url": "https://ads.example/taken"})
    LeaseManager(store).try_claim(item.id, "other-worker")
    site = FakeSite({item.target_url: [found()]})
    pool = make_pool(site, pool_size=1)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    stats = _run(worker, pool, items=[item])

    row = store.get(item.id)
    assert row.lease_owner == "other-worker"
    assert row.status == ItemStatus.IN_PROGRESS
    assert stats.contended == 1
    assert item.target_url not in site.visits


def test_expired_lease_is_taken_over(config, store, add_items, make_pool, no_sleep):
    item, = add_items({"target_url": "https://ads.example/orphan"})
    LeaseManager(store).try_claim(item.id, "dead-worker", ttl=60, now=datetime.utcnow() - timedelta(hours=1))
    site = FakeSite({item.target_url: [found("~4")]})
    pool = make_pool(site, pool_size=1)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    _run(worker, pool, items=[item])

    row = store.get(item.id)
    assert row.status == ItemStatus.SUCCESS
    assert row.extracted_value == 4
    assert row.lease_owner is None


def test_unexpected_exception_becomes_error(config, store, add_items, make_pool, no_sleep):
    item, = add_items({"target_url": "https://ads.example/crash"})
    site = FakeSite({item.target_url: [Render(raises=RuntimeError("renderer crashed"))]})
    pool = make_pool(site, pool_size=1)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    stats = _run(worker, pool)

    row = store.get(item.id)
    assert row.status == ItemStatus.ERROR
    assert row.attempts == 1
    assert row.last_error == "renderer crashed"
    assert row.lease_owner is None
    assert stats.errors == 1
    # Page closed and context released despite the exception
    context = pool.created[0]
    assert all(page.closed for page in context.pages)


def test_graceful_stop_drains_current_batch(config, store, add_items, make_pool):
    items = add_items(*({"target_url": f"https://ads.example/{n}"} for n in range(4)))
    site = FakeSite({item.target_url: [found("~1")] for item in items})
    pool = make_pool(site, pool_size=2)
    holder = {}

    async def stopping_sleep(seconds):
        holder["worker"].request_stop()

    worker = AdCountWorker(config, store, pool, sleep=stopping_sleep)
    holder["worker"] = worker

    stats = _run(worker, pool)

    rows = [store.get(item.id) for item in items]
    assert stats.processed == 2
    assert sorted(row.status for row in rows) == [
        ItemStatus.PENDING, ItemStatus.PENDING, ItemStatus.SUCCESS, ItemStatus.SUCCESS,
    ]
    assert all(row.lease_owner is None for row in rows)


def test_failure_streak_lowers_concurrency_and_recycles(config, store, add_items, make_pool, no_sleep):
    config.fail_high_water = 2
    config.retry_attempts = 0
    items = add_items(*({"target_url": f"https://ads.example/{n}"} for n in range(4)))
    site = FakeSite({item.target_url: [empty()] for item in items})
    pool = make_pool(site, pool_size=2)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    stats = _run(worker, pool)

    assert worker.controller.current == 1
    assert stats.batches == 3
    assert pool.get_stats()["recycled"] >= 2
    assert len(pool.created) > 2


def test_process_limit(config, store, add_items, make_pool, no_sleep):
    config.process_limit = 1
    items = add_items(*({"target_url": f"https://ads.example/{n}"} for n in range(3)))
    site = FakeSite({item.target_url: [found("~2")] for item in items})
    pool = make_pool(site, pool_size=1)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    stats = _run(worker, pool)

    assert stats.shard_size == 1
    assert sum(site.visits.values()) == 1


def test_workers_cover_backlog_without_overlap(config, store, add_items, make_pool, no_sleep):
    items = add_items(*({"target_url": f"https://ads.example/{n}"} for n in range(9)))
    site = FakeSite({item.target_url: [found("~3")] for item in items})

    shards = []
    for index in range(2):
        worker_config = config.with_overrides(total_workers=2, worker_index=index, worker_id=f"w{index}")
        pool = make_pool(site, pool_size=1)
        worker = AdCountWorker(worker_config, store, pool, sleep=no_sleep)
        shards.append([item.id for item in worker.load_shard()])
        _run(worker, pool)

    assert sorted(shards[0] + shards[1]) == sorted(item.id for item in items)
    assert (len(shards[0]), len(shards[1])) == (5, 4)
    assert all(count == 1 for count in site.visits.values())
    assert all(store.get(item.id).status == ItemStatus.SUCCESS for item in items)


def test_final_write_failure_releases_lease(config, store, add_items, make_pool, no_sleep, monkeypatch):
    item, = add_items({"target_url": "https://ads.example/w"})
    site = FakeSite({item.target_url: [found("~6")]})
    pool = make_pool(site, pool_size=1)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    real_update = store.conditional_update

    def failing_state_write(item_id, conditions, patch):
        # Claims and bare lease releases still go through
        if "status" in patch and patch["status"] != ItemStatus.IN_PROGRESS:
            raise OperationalError("UPDATE work_items", {}, Exception("disk I/O error"))
        return real_update(item_id, conditions, patch)

    monkeypatch.setattr(store, "conditional_update", failing_state_write)

    stats = _run(worker, pool)

    row = store.get(item.id)
    assert stats.write_failures == 1
    assert row.lease_owner is None
    assert row.lease_expires_at is None


def test_debug_html_dump(config, store, add_items, make_pool, no_sleep, tmp_path):
    config.debug = True
    config.debug_dir = str(tmp_path)
    item, = add_items({"target_url": "https://ads.example/dbg"})
    site = FakeSite({item.target_url: [empty("layout changed")]})
    pool = make_pool(site, pool_size=1)
    worker = AdCountWorker(config, store, pool, sleep=no_sleep)

    _run(worker, pool)

    dumps = list(tmp_path.glob(f"item-{item.id}-*.html"))
    assert len(dumps) == 1
    assert "layout changed" in dumps[0].read_text(encoding="utf-8")


def test_save_debug_html_unwritable_dir(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    assert save_debug_html("<html></html>", 1, "note", str(blocker / "sub")) is None


def test_custom_labels_reach_soft_delete_across_runs(config, store, add_items, make_pool, no_sleep):
    config.status_no_counter_label = "erro"
    config.retry_attempts = 0
    item, = add_items({"target_url": "https://ads.example/relabelled"})
    site = FakeSite({item.target_url: [empty()]})

    history = []
    for _ in range(3):
        pool = make_pool(site, pool_size=1)
        stats = _run(AdCountWorker(config, store, pool, sleep=no_sleep), pool)
        row = store.get(item.id)
        history.append((row.status, row.attempts, stats.contended))

    assert history == [
        ("erro", 1, 0),
        ("erro", 2, 0),
        (ItemStatus.SOFT_DELETED, 3, 0),
    ]
    assert store.get(item.id).deleted_at is not None


def test_attempts_read_at_claim_time(config, store, add_items, make_pool, no_sleep):
    config.max_fails = 5
    config.retry_attempts = 0
    add_items({"target_url": "https://ads.example/stale"})
    snapshot, = store.select_eligible()
    assert snapshot.attempts == 0

    # Another run fails the item twice after this worker read its backlog
    store.update(snapshot.id, {"attempts": 2, "status": ItemStatus.NO_COUNTER})

    site = FakeSite({snapshot.target_url: [empty()]})
    pool = make_pool(site, pool_size=1)
    _run(AdCountWorker(config, store, pool, sleep=no_sleep), pool, items=[snapshot])

    row = store.get(snapshot.id)
    assert row.attempts == 3
    assert row.status == ItemStatus.NO_COUNTER
