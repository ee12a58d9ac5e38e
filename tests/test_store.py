"""Tests for ActivityStore queries, mutations and JSON persistence."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from workout_sync.errors import PersistenceFailed
from workout_sync.store import ActivityItem, ActivityStore
from workout_sync.store.store import STORE_FILENAME, format_ts, parse_ts

CREATED = datetime(2024, 1, 1, 8, 0, 0, 123456, tzinfo=timezone.utc)


def _add_item(store: ActivityStore, day: date, **kwargs) -> ActivityItem:
    kwargs.setdefault("exercise", store.find_exercise("Walk"))
    kwargs.setdefault("unit", store.find_unit("Minutes"))
    kwargs.setdefault("amount", 30.0)
    item = ActivityItem(**kwargs)
    store.find_or_create_day(day).add(item)
    return item


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


class TestTimestamps:
    def test_format_keeps_microseconds(self):
        assert format_ts(CREATED) == "2024-01-01T08:00:00.123456+00:00"

    def test_parse_accepts_z_suffix(self):
        assert parse_ts("2024-01-01T08:00:00.123456Z") == CREATED

    def test_parse_naive_is_utc(self):
        assert parse_ts("2024-01-01T08:00:00").tzinfo is not None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    """Tests for ActivityStore lookups."""

    def test_find_or_create_day_reuses_bucket(self, store):
        a = store.find_or_create_day(date(2024, 1, 1))
        b = store.find_or_create_day(date(2024, 1, 1))
        assert a is b
        assert len(store.buckets) == 1

    def test_find_exercise_case_insensitive(self, store):
        assert store.find_exercise("  walk ").name == "Walk"
        assert store.find_exercise("Swim") is None

    def test_find_unit_none(self, store):
        assert store.find_unit(None) is None
        assert store.find_unit("MILES").name == "Miles"

    def test_external_id_queries(self, store):
        item = _add_item(store, date(2024, 1, 1), external_id="W1")
        _add_item(store, date(2024, 1, 2))
        assert store.has_external_id("W1")
        assert not store.has_external_id("W2")
        assert store.find_items_by_external_id("W1") == [item]
        assert store.external_ids() == {"W1"}

    def test_external_id_queries_ignore_spelling(self, store):
        item = _add_item(store, date(2024, 1, 1), external_id="ABC-1")
        assert store.has_external_id(" abc-1 ")
        assert store.find_items_by_external_id("abc-1") == [item]
        assert store.external_ids() == {"ABC-1"}

    def test_find_item_by_logical_id(self, store):
        item = _add_item(store, date(2024, 1, 1))
        assert store.find_item(item.logical_id) is item
        assert store.find_item("missing") is None

    def test_delete_item_detaches(self, store):
        item = _add_item(store, date(2024, 1, 1))
        store.delete_item(item)
        assert list(store.items()) == []
        assert item.bucket is None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    """Tests for commit() / open() round trips and failures."""

    def test_open_missing_returns_empty(self, tmp_path: Path):
        store = ActivityStore.open(tmp_path)
        assert store.buckets == []
        assert store.path == tmp_path / STORE_FILENAME

    def test_commit_then_open_preserves_state(self, tmp_path: Path, seed):
        store = seed(ActivityStore(tmp_path / STORE_FILENAME))
        item = _add_item(
            store,
            date(2024, 1, 1),
            external_id="W1",
            created_at=CREATED,
            modified_at=CREATED,
            enjoyment=4,
            note="easy",
        )
        store.find_day(date(2024, 1, 1)).notes = "rest day after"
        store.commit()

        loaded = ActivityStore.open(tmp_path)
        loaded_item = loaded.find_item(item.logical_id)
        assert loaded_item is not None
        assert loaded_item.external_id == "W1"
        assert loaded_item.created_at == CREATED
        assert loaded_item.enjoyment == 4
        assert loaded_item.exercise is loaded.find_exercise("Walk")
        assert loaded_item.unit is loaded.find_unit("Minutes")
        assert loaded_item.bucket.notes == "rest day after"
        assert loaded.find_exercise("Run").default_unit is loaded.find_unit("Miles")

    def test_commit_writes_no_temp_files(self, tmp_path: Path, seed):
        store = seed(ActivityStore(tmp_path / STORE_FILENAME))
        store.commit()
        assert [p.name for p in tmp_path.iterdir()] == [STORE_FILENAME]

    def test_in_memory_commit_is_noop(self, store):
        store.commit()
        assert store.path is None

    def test_open_corrupt_raises(self, tmp_path: Path):
        (tmp_path / STORE_FILENAME).write_text("{not json")
        with pytest.raises(PersistenceFailed):
            ActivityStore.open(tmp_path)

    def test_write_failure_raises_persistence_failed(self, tmp_path: Path, seed):
        store = seed(ActivityStore(tmp_path / STORE_FILENAME))
        with patch(
            "workout_sync.store.store.os.replace", side_effect=OSError("disk full")
        ):
            with pytest.raises(PersistenceFailed, match="disk full"):
                store.commit()
        assert not (tmp_path / STORE_FILENAME).exists()

    async def test_commit_async_writes_document(self, tmp_path: Path, seed):
        store = seed(ActivityStore(tmp_path / STORE_FILENAME))
        _add_item(store, date(2024, 1, 1))
        await store.commit_async()
        document = json.loads((tmp_path / STORE_FILENAME).read_text())
        assert len(document["days"]) == 1
        assert len(document["days"][0]["items"]) == 1


# ---------------------------------------------------------------------------
# Content hash
# ---------------------------------------------------------------------------


class TestContentHash:
    def test_format(self, store):
        item = ActivityItem(
            exercise=store.find_exercise("Walk"),
            unit=store.find_unit("Minutes"),
            amount=30,
            enjoyment=4,
            intensity=2,
            created_at=CREATED,
        )
        assert item.content_hash() == "walk|minutes|30.000|4|2|1704096000"

    def test_naive_created_at_counts_as_utc(self, store):
        item = ActivityItem(
            exercise=store.find_exercise("Walk"),
            created_at=datetime(2024, 1, 1, 8, 0),
        )
        assert item.content_hash().endswith("|1704096000")
        assert item.content_hash().startswith("walk||0.000|")
