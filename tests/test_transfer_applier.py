"""Tests for ImportApplier: decisions, catalog upserts and tombstones.

Covers:
- Default decisions never overwrite local data
- keep_import overwrites an identity conflict
- Planned inserts keep the snapshot's logical ID
- Near-duplicates only go in when forced
- Tombstoned items come back only when restored
- Content-hash tombstones block, restore and merge like ID tombstones
- Snapshot tombstones merge into the local sets (except in restore mode)
- Re-applying a snapshot is a no-op
- Failures surface as ApplyFailed
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from workout_sync.errors import ApplyFailed, PersistenceFailed
from workout_sync.store import ActivityItem
from workout_sync.sync.state import (
    DELETED_HASH_KEY,
    DeletedItemHashSet,
    DeletedItemKeySet,
    DeletedKeySet,
)
from workout_sync.transfer import ImportApplier, ImportDecisions
from workout_sync.transfer.models import SnapshotExercise, SnapshotUnit
from workout_sync.transfer.planner import legacy_key, snapshot_fuzzy_key

DAY = date(2024, 1, 1)
T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def applier(store, state):
    return ImportApplier(
        store,
        DeletedKeySet(state),
        DeletedItemKeySet(state),
        deleted_hashes=DeletedItemHashSet(state),
    )


def _local(store, **kwargs):
    kwargs.setdefault("exercise", store.find_exercise("Walk"))
    kwargs.setdefault("unit", store.find_unit("Minutes"))
    kwargs.setdefault("amount", 30.0)
    kwargs.setdefault("created_at", T0)
    kwargs.setdefault("modified_at", kwargs["created_at"])
    item = ActivityItem(**kwargs)
    store.find_or_create_day(DAY).add(item)
    return item


# ---------------------------------------------------------------------------
# Identity conflicts
# ---------------------------------------------------------------------------


class TestIdentityConflicts:
    """Tests for the keep-local / keep-import choice."""

    @pytest.fixture
    def conflicted(self, store, snapshot_item, make_snapshot):
        local = _local(store, logical_id="L1", amount=10, modified_at=T1)
        snapshot = make_snapshot(
            [snapshot_item(logical_id="L1", amount=20, modified_at=T2)]
        )
        return local, snapshot

    def test_default_keeps_local(self, applier, conflicted):
        local, snapshot = conflicted
        result = applier.apply(snapshot)
        assert local.amount == 10
        assert local.modified_at == T1
        assert result.updated_items == 0
        assert result.skipped_items == 1

    def test_keep_import_overwrites(self, applier, store, conflicted):
        local, snapshot = conflicted
        result = applier.apply(snapshot, ImportDecisions(keep_import={"id:L1"}))
        assert result.updated_items == 1
        assert local.amount == 20
        assert local.modified_at == T2
        assert list(store.items()) == [local]

    def test_update_moves_item_to_snapshot_day(
        self, applier, store, snapshot_item, make_snapshot
    ):
        local = _local(store, logical_id="L1", modified_at=T1)
        snapshot = make_snapshot(
            [snapshot_item(logical_id="L1", modified_at=T2)],
            day=date(2024, 1, 2),
        )
        applier.apply(snapshot, ImportDecisions(keep_import={"id:L1"}))
        assert local.bucket.date == date(2024, 1, 2)
        assert store.find_day(DAY).items == []


# ---------------------------------------------------------------------------
# Inserts and catalog
# ---------------------------------------------------------------------------


class TestInserts:
    def test_planned_insert_keeps_logical_id(
        self, applier, store, snapshot_item, make_snapshot
    ):
        snapshot = make_snapshot(
            [snapshot_item(logical_id="L3", note="morning", modified_at=T1)],
            day=date(2024, 2, 1),
        )
        result = applier.apply(snapshot)
        assert result.inserted_items == 1
        assert result.inserted_days == 1
        item = store.find_item("L3")
        assert item.bucket.date == date(2024, 2, 1)
        assert item.note == "morning"
        assert item.created_at == T0
        assert item.modified_at == T1
        assert item.exercise is store.find_exercise("Walk")

    def test_skip_insert(self, applier, store, snapshot_item, make_snapshot):
        snapshot = make_snapshot([snapshot_item(logical_id="L3")])
        result = applier.apply(snapshot, ImportDecisions(skip_insert_keys={"id:L3"}))
        assert result.inserted_items == 0
        assert result.skipped_items == 1
        assert store.find_item("L3") is None

    def test_catalog_upsert(self, applier, store, snapshot_item, make_snapshot):
        snapshot = make_snapshot(
            [snapshot_item(exercise_name="Swim", unit_name="Laps", amount=12)],
            units=[SnapshotUnit(name="Laps", abbreviation="lp"), SnapshotUnit(name="Minutes")],
            exercises=[SnapshotExercise(name="Swim", default_unit_name="Laps")],
        )
        result = applier.apply(snapshot)
        assert result.inserted_units == 1
        assert result.inserted_exercises == 1
        swim = store.find_exercise("Swim")
        assert swim.default_unit is store.find_unit("Laps")
        (item,) = list(store.items())
        assert item.exercise is swim
        assert item.unit is store.find_unit("Laps")

    def test_unknown_names_created_on_demand(
        self, applier, store, snapshot_item, make_snapshot
    ):
        applier.apply(
            make_snapshot([snapshot_item(exercise_name="Rowing", unit_name="Strokes")])
        )
        assert store.find_exercise("Rowing") is not None
        assert store.find_unit("Strokes") is not None

    def test_reapply_is_noop(self, applier, store, snapshot_item, make_snapshot):
        snapshot = make_snapshot(
            [
                snapshot_item(logical_id="L3"),
                snapshot_item(logical_id="L4", created_at=T1),
            ]
        )
        assert applier.apply(snapshot).inserted_items == 2
        again = applier.apply(snapshot)
        assert again.inserted_items == 0
        assert again.inserted_days == 0
        assert len(list(store.items())) == 2


class TestNearDuplicates:
    """Legacy items close to a local one stay out unless forced."""

    @pytest.fixture
    def near(self, store, snapshot_item, make_snapshot):
        _local(store)
        incoming = snapshot_item(created_at=T0 + timedelta(seconds=10))
        return make_snapshot([incoming]), legacy_key(incoming)

    def test_not_inserted_by_default(self, applier, store, near):
        snapshot, _ = near
        result = applier.apply(snapshot)
        assert result.inserted_items == 0
        assert result.skipped_items == 1
        assert len(list(store.items())) == 1

    def test_forced_insert(self, applier, store, near):
        snapshot, key = near
        result = applier.apply(snapshot, ImportDecisions(insert_legacy_keys={key}))
        assert result.inserted_items == 1
        assert len(list(store.items())) == 2

    def test_skip_overrides_force(self, applier, store, near):
        snapshot, key = near
        result = applier.apply(
            snapshot,
            ImportDecisions(insert_legacy_keys={key}, skip_insert_keys={key}),
        )
        assert result.inserted_items == 0


# ---------------------------------------------------------------------------
# Tombstones
# ---------------------------------------------------------------------------


class TestTombstones:
    def test_tombstoned_item_skipped_by_default(
        self, applier, store, snapshot_item, make_snapshot
    ):
        applier.deleted.add("W9")
        applier.deleted.persist()
        result = applier.apply(make_snapshot([snapshot_item(external_id="W9")]))
        assert result.restored_items == 0
        assert result.skipped_items == 1
        assert not store.has_external_id("W9")
        assert "W9" in applier.deleted.load()

    def test_restore_key_brings_item_back(
        self, applier, store, kv, snapshot_item, make_snapshot
    ):
        applier.deleted.add("W9")
        applier.deleted.persist()
        result = applier.apply(
            make_snapshot([snapshot_item(external_id="W9")]),
            ImportDecisions(restore_keys={"hk:W9"}),
        )
        assert result.restored_items == 1
        assert store.has_external_id("W9")
        assert "W9" not in applier.deleted.load()
        assert kv.get("deleted_external_ids_v1") == []

    def test_restore_mode_restores_all_and_skips_merge(
        self, applier, store, snapshot_item, make_snapshot
    ):
        applier.deleted_items.add("L9")
        applier.deleted_items.persist()
        snapshot = make_snapshot(
            [snapshot_item(logical_id="L9")], deleted_external_ids=["X1"]
        )
        result = applier.apply(snapshot, restore_mode=True)
        assert result.restored_items == 1
        assert result.merged_tombstones == 0
        assert store.find_item("L9") is not None
        assert applier.deleted.load() == set()
        assert applier.deleted_items.load() == set()

    def test_snapshot_tombstones_merged(
        self, applier, snapshot_item, make_snapshot
    ):
        snapshot = make_snapshot(
            [], deleted_external_ids=["X1", "X2"], deleted_logical_ids=["L8"]
        )
        result = applier.apply(snapshot)
        assert result.merged_tombstones == 3
        assert applier.deleted.load() == {"X1", "X2"}
        assert applier.deleted_items.load() == {"L8"}

    def test_merged_item_tombstone_removes_local_item(
        self, applier, store, make_snapshot
    ):
        local = _local(store, logical_id="L7")
        applier.apply(make_snapshot([], deleted_logical_ids=[local.logical_id]))
        assert store.find_item("L7") is None


class TestContentHashTombstones:
    @pytest.fixture
    def hashed(self, applier, snapshot_item, make_snapshot):
        incoming = snapshot_item(logical_id="REMOTE")
        applier.deleted_hashes.add(snapshot_fuzzy_key(incoming))
        applier.deleted_hashes.persist()
        return make_snapshot([incoming]), legacy_key(incoming)

    def test_skipped_by_default(self, applier, store, hashed):
        snapshot, _ = hashed
        result = applier.apply(snapshot)
        assert result.skipped_items == 1
        assert store.find_item("REMOTE") is None

    def test_restore_by_legacy_key(self, applier, store, kv, hashed):
        snapshot, key = hashed
        result = applier.apply(snapshot, ImportDecisions(restore_keys={key}))
        assert result.restored_items == 1
        assert store.find_item("REMOTE") is not None
        assert applier.deleted_hashes.load() == set()
        assert kv.get(DELETED_HASH_KEY) == []

    def test_snapshot_hashes_merged(self, applier, make_snapshot):
        result = applier.apply(make_snapshot([], deleted_item_hashes=["h1", "h2"]))
        assert result.merged_tombstones == 2
        assert applier.deleted_hashes.load() == {"h1", "h2"}

    def test_hash_set_defaults_to_memory(
        self, store, state, snapshot_item, make_snapshot
    ):
        applier = ImportApplier(store, DeletedKeySet(state), DeletedItemKeySet(state))
        result = applier.apply(make_snapshot([], deleted_item_hashes=["h1"]))
        assert result.merged_tombstones == 1
        assert applier.deleted_hashes.snapshot() == {"h1"}


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_commit_failure_raises_apply_failed(
        self, applier, store, snapshot_item, make_snapshot
    ):
        with patch.object(
            type(store), "commit", side_effect=PersistenceFailed("disk full")
        ):
            with pytest.raises(ApplyFailed, match="disk full"):
                applier.apply(make_snapshot([snapshot_item(logical_id="L3")]))
