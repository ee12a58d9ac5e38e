"""Tests for ImportReview and the decision strategies."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from workout_sync.store import ActivityItem
from workout_sync.transfer.planner import legacy_key, plan_import
from workout_sync.transfer.review import (
    ImportReview,
    KeepImportStrategy,
    KeepLocalStrategy,
    RecommendedStrategy,
    RestoreAllStrategy,
    create_decision_strategy,
)

DAY = date(2024, 1, 1)
T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def plan(store, snapshot_item, make_snapshot):
    """A plan with one entry of every class.

    - ``id:NEWER``: import side newer
    - ``id:OLDER``: local side newer
    - ``hk:W9``: tombstoned
    - ``id:FRESH``: plain insert
    - one legacy near-duplicate
    """
    bucket = store.find_or_create_day(DAY)
    walk, minutes = store.find_exercise("Walk"), store.find_unit("Minutes")
    for logical_id, modified in (("NEWER", T1), ("OLDER", T2)):
        bucket.add(
            ActivityItem(
                exercise=walk,
                unit=minutes,
                amount=10,
                created_at=T0,
                modified_at=modified,
                logical_id=logical_id,
            )
        )
    bucket.add(
        ActivityItem(
            exercise=store.find_exercise("Yoga"),
            unit=minutes,
            amount=45,
            created_at=T2,
            modified_at=T2,
        )
    )
    snapshot = make_snapshot(
        [
            snapshot_item(logical_id="NEWER", amount=20, modified_at=T2),
            snapshot_item(logical_id="OLDER", amount=20, modified_at=T1),
            snapshot_item(external_id="W9", created_at=T1),
            snapshot_item(logical_id="FRESH", created_at=T2, exercise_name="Run"),
            snapshot_item(
                exercise_name="Yoga",
                amount=45,
                created_at=T2 + timedelta(seconds=5),
            ),
        ]
    )
    return plan_import(snapshot, store, deleted_external_ids={"W9"})


def _near_key(plan):
    return plan.near_duplicates[0].key


class TestPlanFixture:
    def test_every_class_present(self, plan):
        assert len(plan.identity_conflicts) == 2
        assert [c.key for c in plan.tombstone_conflicts] == ["hk:W9"]
        assert [e.key for e in plan.planned_inserts] == ["id:FRESH"]
        assert len(plan.near_duplicates) == 1
        assert _near_key(plan) == legacy_key(plan.near_duplicates[0].incoming)


# ---------------------------------------------------------------------------
# ImportReview
# ---------------------------------------------------------------------------


class TestImportReview:
    """Tests for incremental decisions."""

    def test_defaults_favor_local(self, plan):
        review = ImportReview(plan)
        decisions = review.decisions()
        assert decisions.keep_import == set()
        assert decisions.restore_keys == set()
        summary = review.predicted_summary()
        assert summary.will_update == 0
        assert summary.will_restore == 0
        assert summary.will_insert == 1
        assert summary.will_skip == 4

    def test_keep_import_and_back(self, plan):
        review = ImportReview(plan)
        conflict = plan.identity_conflicts[0]
        review.choose_keep_import(conflict)
        assert review.keep_import == {conflict.key}
        review.choose_keep_local(conflict.key)
        assert review.keep_import == set()

    def test_keep_import_for_all(self, plan):
        review = ImportReview(plan)
        review.choose_keep_import_for_all()
        assert review.keep_import == {"id:NEWER", "id:OLDER"}
        review.choose_keep_local_for_all()
        assert review.keep_import == set()

    def test_recommended_only_where_import_newer(self, plan):
        review = ImportReview(plan)
        review.choose_keep_import_for_all()
        review.choose_recommended_for_all_conflicts()
        assert review.keep_import == {"id:NEWER"}

    def test_restore_choices(self, plan):
        review = ImportReview(plan)
        review.allow_restore("hk:W9")
        assert review.predicted_summary().will_restore == 1
        review.disallow_restore(plan.tombstone_conflicts[0])
        assert review.restore_keys == set()
        review.allow_restore_for_all()
        assert review.restore_keys == {"hk:W9"}

    def test_restore_mode_restores_everything(self, plan):
        review = ImportReview(plan, restore_mode=True)
        assert review.predicted_summary().will_restore == 1

    def test_skip_beats_restore(self, plan):
        review = ImportReview(plan, restore_mode=True)
        review.toggle_skip_insert("hk:W9")
        assert review.predicted_summary().will_restore == 0

    def test_legacy_insert_toggles(self, plan):
        review = ImportReview(plan)
        key = _near_key(plan)
        review.toggle_insert_legacy(key)
        assert key in review.insert_legacy_keys
        assert review.predicted_summary().will_insert == 2
        review.toggle_insert_legacy(key)
        assert key not in review.insert_legacy_keys
        review.force_insert_all_near_duplicates()
        assert review.insert_legacy_keys == {key}
        review.force_insert_legacy(key)
        assert review.insert_legacy_keys == {key}

    def test_skip_insert_toggle(self, plan):
        review = ImportReview(plan)
        review.toggle_skip_insert(plan.planned_inserts[0])
        summary = review.predicted_summary()
        assert summary.will_insert == 0
        assert summary.will_skip == 5
        review.toggle_skip_insert("id:FRESH")
        assert review.skip_insert_keys == set()

    def test_decisions_are_a_copy(self, plan):
        review = ImportReview(plan)
        review.choose_keep_import_for_all()
        decisions = review.decisions()
        review.clear()
        assert decisions.keep_import == {"id:NEWER", "id:OLDER"}
        assert review.keep_import == set()


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestStrategies:
    def test_keep_local(self, plan):
        decisions = KeepLocalStrategy().decide(plan)
        assert decisions.keep_import == set()
        assert KeepLocalStrategy.restore_mode is False

    def test_recommended(self, plan):
        assert RecommendedStrategy().decide(plan).keep_import == {"id:NEWER"}

    def test_keep_import(self, plan):
        assert KeepImportStrategy().decide(plan).keep_import == {
            "id:NEWER",
            "id:OLDER",
        }

    def test_restore_all(self, plan):
        decisions = RestoreAllStrategy().decide(plan)
        assert decisions.keep_import == {"id:NEWER"}
        assert decisions.restore_keys == {"hk:W9"}
        assert RestoreAllStrategy.restore_mode is True


class TestCreateDecisionStrategy:
    @pytest.mark.parametrize(
        "name,cls",
        [
            ("keep-local", KeepLocalStrategy),
            ("recommended", RecommendedStrategy),
            ("keep-import", KeepImportStrategy),
            ("restore-all", RestoreAllStrategy),
        ],
    )
    def test_known_names(self, name, cls):
        assert isinstance(create_decision_strategy(name), cls)

    def test_unknown_name(self):
        with pytest.raises(ValueError, match="Unknown decision strategy"):
            create_decision_strategy("yolo")
