"""Import planning: classify every snapshot item against the local store.

``plan_import()`` is pure: it reads the store and the tombstone sets and
returns a ``Plan`` without mutating anything.

Classification per snapshot item:

1. **Identity match** (external ID first, then logical ID; the most
   recently modified local match wins).  Identical content *and* equal
   ``modified_at`` -> already-exists; otherwise identity conflict with a
   ``newer`` verdict.
2. **Tombstoned identity** (external IDs compared without case or
   surrounding whitespace) -> tombstone conflict.  A content hash
   listed among the deleted item hashes is also a tombstone conflict,
   keyed by ``legacy_key``.
3. **Fuzzy key** (exercise + unit + amount + ratings + ``created_at`` to
   the second).  A match with identical content -> already-exists; any
   other match -> near-duplicate.  Items without any identity are also
   near-duplicates of a local item with the same content and note within
   15 seconds.  No match -> plain insert.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable

from ..store.models import ActivityItem, normalize_external_id
from ..store.models import content_hash as fuzzy_key
from ..store.store import ActivityStore
from .models import (
    AlreadyExists,
    IdentityConflict,
    ItemView,
    NearDuplicate,
    NewerSide,
    Plan,
    PlannedInsert,
    Snapshot,
    SnapshotItem,
    TombstoneConflict,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.0001
CREATED_AT_TOLERANCE_SECONDS = 1.0
LEGACY_WINDOW_SECONDS = 15.0


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def _norm(text: str | None) -> str:
    return (text or "").strip().lower()


def snapshot_fuzzy_key(item: SnapshotItem) -> str:
    return fuzzy_key(
        item.exercise_name,
        item.unit_name,
        item.amount,
        item.enjoyment,
        item.intensity,
        item.created_at,
    )


def legacy_key(item: SnapshotItem) -> str:
    return "legacy:" + snapshot_fuzzy_key(item)


def identity_key(item: SnapshotItem) -> str | None:
    """Return ``hk:<external id>``, ``id:<logical id>`` or ``None``."""
    if item.external_id:
        return f"hk:{item.external_id}"
    if item.logical_id:
        return f"id:{item.logical_id}"
    return None


def decision_key(item: SnapshotItem) -> str:
    return identity_key(item) or legacy_key(item)


# ---------------------------------------------------------------------------
# Views and comparison
# ---------------------------------------------------------------------------


def view_of_item(item: ActivityItem) -> ItemView:
    return ItemView(
        identity=item.external_id or item.logical_id,
        exercise_name=item.exercise_name,
        unit_name=item.unit_name,
        amount=item.amount,
        enjoyment=item.enjoyment,
        intensity=item.intensity,
        note=item.note,
        created_at=item.created_at,
        modified_at=item.modified_at,
    )


def view_of_snapshot_item(item: SnapshotItem) -> ItemView:
    return ItemView(
        identity=item.external_id or item.logical_id,
        exercise_name=item.exercise_name,
        unit_name=item.unit_name,
        amount=item.amount,
        enjoyment=item.enjoyment,
        intensity=item.intensity,
        note=item.note,
        created_at=item.created_at,
        modified_at=item.modified_at,
    )


def content_equals(a: ItemView, b: ItemView) -> bool:
    """Exercise, unit, amount and creation time agree."""
    return (
        _norm(a.exercise_name) == _norm(b.exercise_name)
        and _norm(a.unit_name) == _norm(b.unit_name)
        and abs(a.amount - b.amount) < AMOUNT_TOLERANCE
        and abs((a.created_at - b.created_at).total_seconds())
        <= CREATED_AT_TOLERANCE_SECONDS
    )


def _within_legacy_window(local: ItemView, incoming: ItemView) -> bool:
    return (
        _norm(local.exercise_name) == _norm(incoming.exercise_name)
        and _norm(local.unit_name) == _norm(incoming.unit_name)
        and abs(local.amount - incoming.amount) < AMOUNT_TOLERANCE
        and local.enjoyment == incoming.enjoyment
        and local.intensity == incoming.intensity
        and (local.note or "").strip() == (incoming.note or "").strip()
        and abs((local.created_at - incoming.created_at).total_seconds())
        <= LEGACY_WINDOW_SECONDS
    )


def newer_side(local: datetime, incoming: datetime) -> NewerSide:
    if incoming == local:
        return NewerSide.EQUAL
    return NewerSide.IMPORT_FILE if incoming > local else NewerSide.LOCAL


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class _LocalIndex:
    """Lookups over the store's items, built once per plan."""

    def __init__(self, store: ActivityStore) -> None:
        self.by_external: dict[str, list[ActivityItem]] = defaultdict(list)
        self.by_logical: dict[str, list[ActivityItem]] = defaultdict(list)
        self.by_fuzzy: dict[str, list[ActivityItem]] = defaultdict(list)
        self.views: list[ItemView] = []
        for item in store.items():
            if item.external_id:
                folded = normalize_external_id(item.external_id)
                self.by_external[folded].append(item)
            self.by_logical[item.logical_id].append(item)
            self.by_fuzzy[item.content_hash()].append(item)
            self.views.append(view_of_item(item))

    def identity_match(self, item: SnapshotItem) -> ActivityItem | None:
        matches: list[ActivityItem] = []
        if item.external_id:
            matches = self.by_external.get(
                normalize_external_id(item.external_id), []
            )
        if not matches and item.logical_id:
            matches = self.by_logical.get(item.logical_id, [])
        if not matches:
            return None
        return max(matches, key=lambda i: i.modified_at)


def plan_import(
    snapshot: Snapshot,
    store: ActivityStore,
    deleted_external_ids: Iterable[str] = (),
    deleted_item_ids: Iterable[str] = (),
    deleted_item_hashes: Iterable[str] = (),
) -> Plan:
    """Classify every item of *snapshot* against *store*.

    Args:
        snapshot: Parsed snapshot.
        store: Current local store (read only).
        deleted_external_ids: Tombstoned external IDs.
        deleted_item_ids: Tombstoned logical IDs.
        deleted_item_hashes: Content hashes of deleted items.  A match is
            a tombstone conflict keyed by ``legacy_key``.

    Returns:
        The ``Plan``.
    """
    deleted_external = {normalize_external_id(e) for e in deleted_external_ids}
    deleted_logical = set(deleted_item_ids)
    deleted_hashes = set(deleted_item_hashes)
    index = _LocalIndex(store)
    plan = Plan()

    for day in snapshot.days:
        for item in day.items:
            incoming = view_of_snapshot_item(item)
            key = identity_key(item)

            local = index.identity_match(item)
            if local is not None:
                local_view = view_of_item(local)
                if (
                    content_equals(local_view, incoming)
                    and local.modified_at == item.modified_at
                ):
                    plan.already_exists.append(
                        AlreadyExists(
                            key=legacy_key(item),
                            day=day.date,
                            incoming=item,
                            identity_matched=True,
                        )
                    )
                else:
                    plan.identity_conflicts.append(
                        IdentityConflict(
                            key=key,
                            day=day.date,
                            incoming=item,
                            local=local_view,
                            newer=newer_side(
                                local.modified_at, item.modified_at
                            ),
                            local_modified_at=local.modified_at,
                            import_modified_at=item.modified_at,
                        )
                    )
                continue

            if (
                item.external_id
                and normalize_external_id(item.external_id) in deleted_external
            ) or (item.logical_id and item.logical_id in deleted_logical):
                plan.tombstone_conflicts.append(
                    TombstoneConflict(key=key, day=day.date, incoming=item)
                )
                continue

            fuzzy = legacy_key(item)
            if snapshot_fuzzy_key(item) in deleted_hashes:
                plan.tombstone_conflicts.append(
                    TombstoneConflict(key=fuzzy, day=day.date, incoming=item)
                )
                continue

            matches = [
                view_of_item(i)
                for i in index.by_fuzzy.get(snapshot_fuzzy_key(item), [])
            ]
            if key is None:
                # Legacy exports: also compare against every local item.
                matches += [
                    v
                    for v in index.views
                    if v not in matches
                    and (
                        content_equals(v, incoming)
                        or _within_legacy_window(v, incoming)
                    )
                ]

            if any(content_equals(v, incoming) for v in matches):
                plan.already_exists.append(
                    AlreadyExists(key=fuzzy, day=day.date, incoming=item)
                )
            elif matches:
                plan.near_duplicates.append(
                    NearDuplicate(
                        key=fuzzy,
                        day=day.date,
                        incoming=item,
                        local=matches[0],
                    )
                )
            else:
                plan.planned_inserts.append(
                    PlannedInsert(key=key or fuzzy, day=day.date, incoming=item)
                )

    logger.debug(
        "Planned import: %d conflicts, %d tombstoned, %d near-duplicates, "
        "%d inserts, %d already present",
        len(plan.identity_conflicts),
        len(plan.tombstone_conflicts),
        len(plan.near_duplicates),
        len(plan.planned_inserts),
        len(plan.already_exists),
    )
    return plan
