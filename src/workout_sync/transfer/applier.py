"""Import apply: execute a plan against the store under user decisions.

``ImportApplier.apply()`` re-plans the snapshot against the current
store (the store may have changed since the user reviewed the plan),
upserts missing catalog entries, buffers every item mutation as an
operation, executes the operations, commits once, persists tombstone
changes and finally runs entity dedup.

Default decisions favour local state: no conflict is overwritten, no
tombstone is restored, no near-duplicate is inserted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from ..errors import ApplyFailed
from ..store.dedup import run_entity_dedup
from ..store.models import (
    ActivityItem,
    DayBucket,
    ExerciseType,
    ImportUnitPreference,
    UnitType,
    utc_now,
)
from ..store.store import ActivityStore
from ..store.keyvalue import MemoryKeyValueStore
from ..sync.state import (
    DeletedItemHashSet,
    DeletedItemKeySet,
    DeletedKeySet,
    SyncState,
)
from .models import (
    ApplyResult,
    ImportDecisions,
    Plan,
    Snapshot,
    SnapshotItem,
)
from .planner import plan_import, snapshot_fuzzy_key

logger = logging.getLogger(__name__)


@dataclass
class _Operation:
    """One buffered item mutation.

    ``kind`` is ``"update"`` (overwrite *target* with *incoming*) or
    ``"insert"`` (create a new item from *incoming*).
    """

    kind: str
    incoming: SnapshotItem
    day: date
    target: ActivityItem | None = None
    restore: bool = False


class ImportApplier:
    """Apply snapshots to one store.

    Args:
        store: Store to mutate.
        deleted: Tombstoned external IDs.
        deleted_items: Tombstoned logical IDs.
        preference: Unit preference for the post-apply item dedup.
        deleted_hashes: Content hashes of deleted items.  ``None`` keeps
            them in memory only.
    """

    def __init__(
        self,
        store: ActivityStore,
        deleted: DeletedKeySet,
        deleted_items: DeletedItemKeySet,
        preference: ImportUnitPreference = ImportUnitPreference.TIME,
        deleted_hashes: DeletedItemHashSet | None = None,
    ) -> None:
        self.store = store
        self.deleted = deleted
        self.deleted_items = deleted_items
        self.preference = preference
        if deleted_hashes is None:
            deleted_hashes = DeletedItemHashSet(SyncState(MemoryKeyValueStore()))
        self.deleted_hashes = deleted_hashes

    def plan(self, snapshot: Snapshot) -> Plan:
        """Plan *snapshot* against the freshly loaded tombstone sets."""
        return plan_import(
            snapshot,
            self.store,
            self.deleted.load(),
            self.deleted_items.load(),
            self.deleted_hashes.load(),
        )

    def apply(
        self,
        snapshot: Snapshot,
        decisions: ImportDecisions | None = None,
        restore_mode: bool = False,
    ) -> ApplyResult:
        """Apply *snapshot* under *decisions*.

        Args:
            snapshot: Parsed snapshot.
            decisions: Per-key resolutions; ``None`` means all defaults.
            restore_mode: Restore every tombstoned item and do not merge
                the snapshot's tombstones.

        Returns:
            Counts of what changed.

        Raises:
            ApplyFailed: If any step fails.  The store may be partially
                updated; run entity dedup again before trusting it.
        """
        decisions = decisions or ImportDecisions()
        try:
            return self._apply(snapshot, decisions, restore_mode)
        except ApplyFailed:
            raise
        except Exception as exc:
            logger.error("Import apply failed: %s", exc)
            raise ApplyFailed(f"Import apply failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _apply(
        self,
        snapshot: Snapshot,
        decisions: ImportDecisions,
        restore_mode: bool,
    ) -> ApplyResult:
        plan = self.plan(snapshot)
        inserted_units, inserted_exercises = self._upsert_catalog(snapshot)
        operations, skipped = self._build_operations(
            plan, decisions, restore_mode
        )

        days_before = {b.date for b in self.store.buckets}
        counts = {"insert": 0, "update": 0, "restore": 0}
        for op in operations:
            self._execute(op)
            counts["restore" if op.restore else op.kind] += 1
        inserted_days = len(
            {b.date for b in self.store.buckets} - days_before
        )

        self.store.commit()

        merged = 0
        if not restore_mode:
            tombstones = (self.deleted, self.deleted_items, self.deleted_hashes)
            before = sum(len(t) for t in tombstones)
            self.deleted.add(*snapshot.deleted.external_ids)
            self.deleted_items.add(*snapshot.deleted.logical_ids)
            self.deleted_hashes.add(*snapshot.deleted.item_hashes)
            merged = sum(len(t) for t in tombstones) - before
        for op in operations:
            if op.restore:
                self.deleted.discard(op.incoming.external_id or "")
                self.deleted_items.discard(op.incoming.logical_id or "")
                self.deleted_hashes.discard(snapshot_fuzzy_key(op.incoming))
        self.deleted.persist()
        self.deleted_items.persist()
        self.deleted_hashes.persist()

        report = run_entity_dedup(
            self.store, self.preference, self.deleted_items.snapshot()
        )
        if report.changed:
            self.store.commit()

        result = ApplyResult(
            inserted_units=inserted_units,
            inserted_exercises=inserted_exercises,
            inserted_days=inserted_days,
            inserted_items=counts["insert"],
            updated_items=counts["update"],
            restored_items=counts["restore"],
            skipped_items=skipped,
            merged_tombstones=merged,
        )
        logger.info("Import applied: %s", result.model_dump())
        return result

    def _upsert_catalog(self, snapshot: Snapshot) -> tuple[int, int]:
        units = 0
        for raw in snapshot.units:
            if self.store.find_unit(raw.name) is None:
                self.store.add_unit_type(
                    UnitType(
                        name=raw.name,
                        abbreviation=raw.abbreviation,
                        step_size=raw.step_size,
                        display_as_integer=raw.display_as_integer,
                        created_at=raw.created_at or utc_now(),
                    )
                )
                units += 1
        exercises = 0
        for raw in snapshot.exercises:
            if self.store.find_exercise(raw.name) is None:
                self.store.add_exercise_type(
                    ExerciseType(
                        name=raw.name,
                        default_unit=self.store.find_unit(raw.default_unit_name),
                        base_met=raw.base_met,
                        rep_weight=raw.rep_weight,
                        default_pace_min_per_mi=raw.default_pace_min_per_mi,
                        icon_system_name=raw.icon_system_name,
                        created_at=raw.created_at or utc_now(),
                    )
                )
                exercises += 1
        return units, exercises

    def _build_operations(
        self,
        plan: Plan,
        decisions: ImportDecisions,
        restore_mode: bool,
    ) -> tuple[list[_Operation], int]:
        operations: list[_Operation] = []
        skipped = 0

        for conflict in plan.identity_conflicts:
            if conflict.key in decisions.keep_import:
                target = self._identity_target(conflict.incoming)
                if target is not None:
                    operations.append(
                        _Operation(
                            "update", conflict.incoming, conflict.day, target
                        )
                    )
                    continue
            skipped += 1

        for conflict in plan.tombstone_conflicts:
            if (
                restore_mode or conflict.key in decisions.restore_keys
            ) and conflict.key not in decisions.skip_insert_keys:
                operations.append(
                    _Operation(
                        "insert", conflict.incoming, conflict.day, restore=True
                    )
                )
            else:
                skipped += 1

        for entry in plan.planned_inserts:
            if entry.key in decisions.skip_insert_keys:
                skipped += 1
            else:
                operations.append(
                    _Operation("insert", entry.incoming, entry.day)
                )

        for entry in [*plan.near_duplicates, *plan.already_exists]:
            if (
                entry.key in decisions.insert_legacy_keys
                and entry.key not in decisions.skip_insert_keys
            ):
                operations.append(
                    _Operation("insert", entry.incoming, entry.day)
                )
            else:
                skipped += 1

        return operations, skipped

    def _identity_target(self, incoming: SnapshotItem) -> ActivityItem | None:
        matches: list[ActivityItem] = []
        if incoming.external_id:
            matches = self.store.find_items_by_external_id(incoming.external_id)
        if not matches and incoming.logical_id:
            found = self.store.find_item(incoming.logical_id)
            matches = [found] if found else []
        if not matches:
            return None
        return max(matches, key=lambda i: i.modified_at)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, op: _Operation) -> None:
        bucket = self.store.find_or_create_day(op.day)
        exercise = self._resolve_exercise(op.incoming.exercise_name)
        if op.kind == "update":
            item = op.target
            item.exercise = exercise
            item.unit = (
                self._resolve_unit(op.incoming.unit_name, exercise, item.unit)
            )
            self._copy_fields(item, op.incoming)
            bucket.add(item)
            logger.debug("Updated %s from snapshot", item.logical_id)
            return

        item = ActivityItem(
            exercise=exercise,
            unit=self._resolve_unit(op.incoming.unit_name, exercise, None),
            external_id=op.incoming.external_id,
        )
        if op.incoming.logical_id and self.store.find_item(
            op.incoming.logical_id
        ) is None:
            item.logical_id = op.incoming.logical_id
        self._copy_fields(item, op.incoming)
        self._insert(bucket, item)

    def _insert(self, bucket: DayBucket, item: ActivityItem) -> None:
        bucket.add(item)
        logger.debug(
            "Inserted %s (%s) into %s",
            item.logical_id,
            item.exercise_name,
            bucket.date,
        )

    @staticmethod
    def _copy_fields(item: ActivityItem, incoming: SnapshotItem) -> None:
        item.amount = incoming.amount
        item.note = incoming.note
        item.enjoyment = incoming.enjoyment
        item.intensity = incoming.intensity
        item.created_at = incoming.created_at
        item.modified_at = incoming.modified_at

    def _resolve_exercise(self, name: str) -> ExerciseType:
        exercise = self.store.find_exercise(name)
        if exercise is None:
            exercise = self.store.add_exercise_type(ExerciseType(name=name))
        return exercise

    def _resolve_unit(
        self,
        name: str | None,
        exercise: ExerciseType,
        current: UnitType | None,
    ) -> UnitType | None:
        unit = self.store.find_unit(name)
        if unit is None and name:
            unit = self.store.add_unit_type(UnitType(name=name))
        return unit or current or exercise.default_unit
