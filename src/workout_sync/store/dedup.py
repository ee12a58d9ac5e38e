"""Post-hoc entity deduplication.

Overlapping sync cycles, forced imports, snapshot applies and mirrored
stores can all leave the store with duplicates that share a natural key.
This module heals them after the fact:

* **Day buckets** (key: calendar date) -- keeper is the newest
  ``created_at``, tie-broken by most items; losers' items are reparented.
* **Exercise / unit types** (key: case-insensitive name) -- keeper is the
  newest ``created_at``; item and default-unit references are reassigned.
* **Items** sharing an external ID -- see ``cleanup_duplicate_items``.
* **Tombstoned items** -- items whose logical ID is tombstoned are removed.
* **Unit / amount invariant** -- a non-zero amount always has a unit.

Every function mutates in memory only and returns how many entities it
removed or repaired; callers commit.  Running the whole pass twice makes
no further change.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from pydantic import BaseModel

from .models import (
    ActivityItem,
    ExerciseType,
    ImportUnitPreference,
    UnitType,
    find_best_matching_unit,
    normalize_external_id,
)
from .store import ActivityStore

logger = logging.getLogger(__name__)

# Items whose modification times differ by more than this are considered
# distinct write events; the oldest one wins.
CLEARLY_DIFFERENT_SECONDS = 30.0


class DedupReport(BaseModel):
    """Counts of what one ``run_entity_dedup`` pass changed."""

    buckets_merged: int = 0
    exercises_merged: int = 0
    units_merged: int = 0
    items_removed: int = 0
    tombstoned_removed: int = 0
    invariant_repairs: int = 0

    model_config = {"frozen": True}

    @property
    def changed(self) -> bool:
        return any(
            (
                self.buckets_merged,
                self.exercises_merged,
                self.units_merged,
                self.items_removed,
                self.tombstoned_removed,
                self.invariant_repairs,
            )
        )


# ---------------------------------------------------------------------------
# Day buckets and catalog entities
# ---------------------------------------------------------------------------


def cleanup_duplicate_day_buckets(store: ActivityStore) -> int:
    """Merge buckets that share a calendar date."""
    groups: dict = defaultdict(list)
    for bucket in store.buckets:
        groups[bucket.date].append(bucket)

    removed = 0
    for day, buckets in groups.items():
        if len(buckets) < 2:
            continue
        keeper = max(buckets, key=lambda b: (b.created_at, len(b.items)))
        for loser in buckets:
            if loser is keeper:
                continue
            for item in list(loser.items):
                keeper.add(item)
            if not keeper.notes and loser.notes:
                keeper.notes = loser.notes
            store.delete_bucket(loser)
            removed += 1
        logger.debug("Merged %d duplicate buckets for %s", len(buckets) - 1, day)
    return removed


def _reference_counts(store: ActivityStore, attr: str) -> dict[int, int]:
    counts: dict[int, int] = defaultdict(int)
    for item in store.items():
        ref = getattr(item, attr)
        if ref is not None:
            counts[id(ref)] += 1
    return counts


def cleanup_duplicate_exercise_types(store: ActivityStore) -> int:
    """Collapse exercise types with the same case-insensitive name."""
    groups: dict[str, list[ExerciseType]] = defaultdict(list)
    for exercise in store.exercise_types:
        groups[exercise.name.strip().lower()].append(exercise)

    counts = _reference_counts(store, "exercise")
    removed = 0
    for name, exercises in groups.items():
        if len(exercises) < 2:
            continue
        keeper = max(exercises, key=lambda e: (e.created_at, counts[id(e)]))
        losers = [e for e in exercises if e is not keeper]
        for item in store.items():
            if any(item.exercise is loser for loser in losers):
                item.exercise = keeper
        for loser in losers:
            store.remove_exercise_type(loser)
            removed += 1
        logger.debug("Merged %d duplicate exercise types '%s'", len(losers), name)
    return removed


def cleanup_duplicate_unit_types(store: ActivityStore) -> int:
    """Collapse unit types with the same case-insensitive name."""
    groups: dict[str, list[UnitType]] = defaultdict(list)
    for unit in store.unit_types:
        groups[unit.name.strip().lower()].append(unit)

    counts = _reference_counts(store, "unit")
    removed = 0
    for name, units in groups.items():
        if len(units) < 2:
            continue
        keeper = max(units, key=lambda u: (u.created_at, counts[id(u)]))
        losers = [u for u in units if u is not keeper]
        for item in store.items():
            if any(item.unit is loser for loser in losers):
                item.unit = keeper
        for exercise in store.exercise_types:
            if any(exercise.default_unit is loser for loser in losers):
                exercise.default_unit = keeper
        for loser in losers:
            store.remove_unit_type(loser)
            removed += 1
        logger.debug("Merged %d duplicate unit types '%s'", len(losers), name)
    return removed


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def _is_distance(unit: UnitType | None) -> bool:
    return unit is not None and unit.is_distance()


def _is_time(unit: UnitType | None) -> bool:
    return unit is not None and unit.is_time()


def _matches_preference(
    item: ActivityItem, preference: ImportUnitPreference
) -> bool:
    if preference == ImportUnitPreference.DISTANCE:
        return _is_distance(item.unit)
    if preference == ImportUnitPreference.TIME:
        return _is_time(item.unit)
    default = item.exercise.default_unit if item.exercise else None
    if _is_distance(default):
        return _is_distance(item.unit)
    if _is_time(default):
        return _is_time(item.unit)
    return False


def _tie_break_score(item: ActivityItem) -> float:
    score = 0.0
    if item.amount > 0:
        score += 0.25
    if item.note:
        score += 0.1
    score += item.modified_at.timestamp() / 1e12
    return score


def choose_item_keeper(
    items: list[ActivityItem], preference: ImportUnitPreference
) -> ActivityItem:
    """Pick which of several items sharing an external ID survives.

    1. If modification times clearly differ, the oldest item is the one
       that already existed: keep it.
    2. Otherwise prefer items whose unit matches *preference*.
    3. Then prefer distance units.
    4. Finally the highest tie-break score (non-zero amount, note,
       recency).
    """
    oldest = min(items, key=lambda i: i.modified_at)
    if any(
        abs((i.modified_at - oldest.modified_at).total_seconds())
        > CLEARLY_DIFFERENT_SECONDS
        for i in items
    ):
        return oldest

    candidates = items
    preferred = [i for i in candidates if _matches_preference(i, preference)]
    if preferred:
        candidates = preferred
    distance = [i for i in candidates if _is_distance(i.unit)]
    if distance:
        candidates = distance
    return max(candidates, key=_tie_break_score)


def cleanup_duplicate_items(
    store: ActivityStore,
    preference: ImportUnitPreference = ImportUnitPreference.TIME,
) -> int:
    """Keep one item per (normalized) external ID."""
    groups: dict[str, list[ActivityItem]] = defaultdict(list)
    for item in store.items():
        if item.external_id:
            groups[normalize_external_id(item.external_id)].append(item)

    removed = 0
    for key, items in groups.items():
        if len(items) < 2:
            continue
        keeper = choose_item_keeper(items, preference)
        for item in items:
            if item is not keeper:
                store.delete_item(item)
                removed += 1
        logger.debug("Removed %d duplicate items for %s", len(items) - 1, key)
    return removed


def enforce_deleted_item_tombstones(
    store: ActivityStore, deleted_item_ids: Iterable[str]
) -> int:
    """Remove every item whose logical ID is tombstoned."""
    ids = set(deleted_item_ids)
    if not ids:
        return 0
    doomed = [i for i in store.items() if i.logical_id in ids]
    for item in doomed:
        store.delete_item(item)
    return len(doomed)


def enforce_unit_amount_invariant(store: ActivityStore) -> int:
    """Give every non-zero amount a unit, or zero the amount."""
    repaired = 0
    for item in store.items():
        if item.amount == 0 or item.unit is not None:
            continue
        unit = None
        if item.exercise is not None:
            unit = item.exercise.default_unit or find_best_matching_unit(
                item.exercise, store.unit_types
            )
        if unit is not None:
            item.unit = unit
        else:
            item.amount = 0.0
        repaired += 1
    return repaired


# ---------------------------------------------------------------------------
# Full pass
# ---------------------------------------------------------------------------


def run_entity_dedup(
    store: ActivityStore,
    preference: ImportUnitPreference = ImportUnitPreference.TIME,
    deleted_item_ids: Iterable[str] = (),
) -> DedupReport:
    """Run every cleanup step once, in dependency order.

    Catalog entities are merged before items so item comparisons see the
    surviving exercise / unit objects.
    """
    report = DedupReport(
        buckets_merged=cleanup_duplicate_day_buckets(store),
        exercises_merged=cleanup_duplicate_exercise_types(store),
        units_merged=cleanup_duplicate_unit_types(store),
        items_removed=cleanup_duplicate_items(store, preference),
        tombstoned_removed=enforce_deleted_item_tombstones(
            store, deleted_item_ids
        ),
        invariant_repairs=enforce_unit_amount_invariant(store),
    )
    if report.changed:
        logger.info("Entity dedup: %s", report.model_dump())
    return report
