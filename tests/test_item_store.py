#!/usr/bin/env python3
"""
Unit tests for the work item datastore.
"""

from datetime import datetime, timedelta

import pytest

from db.item_store import get_engine
from db.models import ItemStatus, WorkItem


def test_select_eligible_excludes_soft_deleted(store, add_items):
    keep, gone, flagged = add_items(
        {"target_url": "https://ads.example/1"},
        {"target_url": "https://ads.example/2", "deleted_at": datetime(2026, 1, 1)},
        {"target_url": "https://ads.example/3", "status": ItemStatus.SOFT_DELETED},
    )

    eligible = store.select_eligible()

    assert [item.id for item in eligible] == [keep.id]


def test_select_eligible_ordered_by_id(store, add_items):
    ids = [item.id for item in add_items(*({"target_url": f"https://ads.example/{n}"} for n in range(5)))]
    assert [item.id for item in store.select_eligible()] == sorted(ids)


def test_select_only_missing(store, add_items):
    with_value, without_value = add_items(
        {"target_url": "https://ads.example/1", "extracted_value": 10},
        {"target_url": "https://ads.example/2"},
    )

    eligible = store.select_eligible(only_missing=True)

    assert [item.id for item in eligible] == [without_value.id]


def test_conditional_update_reports_rows(store, add_items):
    item, = add_items({"target_url": "https://ads.example/1", "status": ItemStatus.BLOCKED})

    assert store.conditional_update(item.id, [WorkItem.status == ItemStatus.SUCCESS], {"attempts": 5}) == 0
    assert store.conditional_update(item.id, [WorkItem.status == ItemStatus.BLOCKED], {"attempts": 5}) == 1
    assert store.get(item.id).attempts == 5


def test_update_missing_row(store):
    assert store.update(404, {"status": ItemStatus.SUCCESS}) == 0


def test_export_rows_most_recent_first(store, add_items):
    old, new, never = add_items(
        {"name": "old", "target_url": "https://ads.example/1"},
        {"name": "new", "target_url": "https://ads.example/2"},
        {"name": "never", "target_url": "https://ads.example/3"},
    )
    store.update(old.id, {"updated_at": datetime(2026, 10, 1)})
    store.update(new.id, {"updated_at": datetime(2026, 10, 1) + timedelta(days=5), "extracted_value": 8})

    rows = store.export_rows()

    assert [row["name"] for row in rows] == ["new", "old", "never"]
    assert rows[0]["extracted_value"] == 8
    assert rows[0]["updated_at"] == "2026-10-06T00:00:00"


def test_get_engine_requires_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        get_engine()
