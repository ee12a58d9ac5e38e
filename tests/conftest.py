"""Shared pytest fixtures for workout-sync tests."""

from datetime import date, datetime, timedelta, timezone

import pytest

from workout_sync.store import (
    ActivityStore,
    ExerciseType,
    MemoryKeyValueStore,
    UnitType,
)
from workout_sync.sync import ExternalRecord, StaticRecordSource, SyncCoordinator, SyncState
from workout_sync.transfer.models import (
    Snapshot,
    SnapshotDay,
    SnapshotItem,
    SnapshotTombstones,
)

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)
CATALOG_CREATED = datetime(2023, 1, 1, tzinfo=timezone.utc)


def seed_catalog(store: ActivityStore) -> ActivityStore:
    """Give *store* the default unit and exercise catalog."""
    minutes = store.add_unit_type(
        UnitType("Minutes", "min", created_at=CATALOG_CREATED)
    )
    miles = store.add_unit_type(
        UnitType("Miles", "mi", step_size=0.1, created_at=CATALOG_CREATED)
    )
    store.add_unit_type(
        UnitType("Kilometers", "km", step_size=0.1, created_at=CATALOG_CREATED)
    )
    store.add_unit_type(
        UnitType("Reps", "reps", display_as_integer=True, created_at=CATALOG_CREATED)
    )
    for name, unit in (
        ("Walk", minutes),
        ("Run", miles),
        ("Cycling", minutes),
        ("Yoga", minutes),
        ("Plank", minutes),
        ("Other", minutes),
    ):
        store.add_exercise_type(
            ExerciseType(name, default_unit=unit, created_at=CATALOG_CREATED)
        )
    return store


@pytest.fixture
def store():
    """In-memory store with the default catalog."""
    return seed_catalog(ActivityStore())


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def mirror_kv():
    return MemoryKeyValueStore()


@pytest.fixture
def state(kv, mirror_kv):
    return SyncState(kv, mirror_kv)


@pytest.fixture
def make_record():
    """Factory fixture for provider records."""

    def _make(
        record_id="W1",
        activity_type="walking",
        start=T0,
        duration=1800.0,
        distance_meters=None,
    ):
        return ExternalRecord(
            id=record_id,
            activity_type=activity_type,
            start_time=start,
            end_time=start + timedelta(seconds=duration),
            duration=duration,
            distance_meters=distance_meters,
        )

    return _make


@pytest.fixture
def source():
    return StaticRecordSource()


@pytest.fixture
def coordinator(source, store, state):
    """Coordinator over the static source with a fixed clock and UTC days."""
    return SyncCoordinator(
        source,
        store,
        state,
        tz=timezone.utc,
        clock=lambda: NOW,
    )


@pytest.fixture
def seed():
    """The catalog seeding helper, for stores built inside a test."""
    return seed_catalog


@pytest.fixture
def snapshot_item():
    """Factory fixture for snapshot items (a 30 minute walk at T0)."""

    def _make(**kwargs):
        kwargs.setdefault("exercise_name", "Walk")
        kwargs.setdefault("unit_name", "Minutes")
        kwargs.setdefault("amount", 30.0)
        kwargs.setdefault("created_at", T0)
        kwargs.setdefault("modified_at", kwargs["created_at"])
        return SnapshotItem(**kwargs)

    return _make


@pytest.fixture
def make_snapshot():
    """Factory fixture wrapping items into a one-day snapshot."""

    def _make(
        items,
        day=date(2024, 1, 1),
        deleted_external_ids=(),
        deleted_logical_ids=(),
        deleted_item_hashes=(),
        units=(),
        exercises=(),
    ):
        return Snapshot(
            exported_at=NOW,
            units=list(units),
            exercises=list(exercises),
            days=[SnapshotDay(date=day, items=list(items))],
            deleted=SnapshotTombstones(
                external_ids=list(deleted_external_ids),
                logical_ids=list(deleted_logical_ids),
                item_hashes=list(deleted_item_hashes),
            ),
        )

    return _make
