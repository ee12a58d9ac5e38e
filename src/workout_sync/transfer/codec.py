"""Snapshot export and parsing.

The snapshot is a versioned JSON document.  Timestamps are written raw
(ISO 8601, full precision) so the planner can rebuild identity and
fuzzy keys losslessly from an export.
"""

from __future__ import annotations

import json
import logging
from typing import Iterable

from pydantic import ValidationError

from ..errors import SnapshotMalformed
from ..store.models import utc_now
from ..store.store import ActivityStore
from .models import (
    SNAPSHOT_VERSION,
    Snapshot,
    SnapshotDay,
    SnapshotExercise,
    SnapshotItem,
    SnapshotTombstones,
    SnapshotUnit,
)

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("version", "exported_at", "units", "exercises", "days")


def build_snapshot(
    store: ActivityStore,
    deleted_external_ids: Iterable[str] = (),
    deleted_item_ids: Iterable[str] = (),
    deleted_item_hashes: Iterable[str] = (),
) -> Snapshot:
    """Capture *store* (plus tombstones) as a ``Snapshot``.

    Days are sorted by date and items by ``created_at``.  Only units and
    exercises referenced by some item are exported, unless no item
    references any, in which case the whole catalog is.
    """
    used_units: set[str] = set()
    used_exercises: set[str] = set()
    days: list[SnapshotDay] = []
    for bucket in sorted(store.buckets, key=lambda b: b.date):
        items = []
        for item in sorted(bucket.items, key=lambda i: i.created_at):
            if item.unit is not None:
                used_units.add(item.unit.name.lower())
            if item.exercise is not None:
                used_exercises.add(item.exercise.name.lower())
            items.append(
                SnapshotItem(
                    logical_id=item.logical_id,
                    exercise_name=item.exercise_name or "Unknown",
                    unit_name=item.unit_name,
                    amount=item.amount,
                    note=item.note,
                    enjoyment=item.enjoyment,
                    intensity=item.intensity,
                    created_at=item.created_at,
                    modified_at=item.modified_at,
                    external_id=item.external_id,
                )
            )
        days.append(
            SnapshotDay(date=bucket.date, notes=bucket.notes, items=items)
        )

    units = [
        SnapshotUnit(
            name=u.name,
            abbreviation=u.abbreviation,
            step_size=u.step_size,
            display_as_integer=u.display_as_integer,
            created_at=u.created_at,
        )
        for u in sorted(store.unit_types, key=lambda u: u.name.lower())
        if not used_units or u.name.lower() in used_units
    ]
    exercises = [
        SnapshotExercise(
            name=e.name,
            base_met=e.base_met,
            rep_weight=e.rep_weight,
            default_pace_min_per_mi=e.default_pace_min_per_mi,
            icon_system_name=e.icon_system_name,
            default_unit_name=e.default_unit.name if e.default_unit else None,
            created_at=e.created_at,
        )
        for e in sorted(store.exercise_types, key=lambda e: e.name.lower())
        if not used_exercises or e.name.lower() in used_exercises
    ]
    return Snapshot(
        version=SNAPSHOT_VERSION,
        exported_at=utc_now(),
        units=units,
        exercises=exercises,
        days=days,
        deleted=SnapshotTombstones(
            external_ids=sorted(set(deleted_external_ids)),
            logical_ids=sorted(set(deleted_item_ids)),
            item_hashes=sorted(set(deleted_item_hashes)),
        ),
    )


def encode_snapshot(snapshot: Snapshot) -> str:
    """Serialise *snapshot* as pretty-printed JSON with sorted keys."""
    data = snapshot.model_dump(mode="json")
    return json.dumps(data, indent=2, sort_keys=True)


def export_snapshot(
    store: ActivityStore,
    deleted_external_ids: Iterable[str] = (),
    deleted_item_ids: Iterable[str] = (),
    deleted_item_hashes: Iterable[str] = (),
) -> str:
    return encode_snapshot(
        build_snapshot(
            store, deleted_external_ids, deleted_item_ids, deleted_item_hashes
        )
    )


def parse_snapshot(data: bytes | str) -> Snapshot:
    """Parse snapshot bytes or text.

    A leading UTF-8 byte order mark is ignored.

    Raises:
        SnapshotMalformed: If the input is not a valid version-1 snapshot.
    """
    if isinstance(data, bytes):
        if data.startswith(b"\xef\xbb\xbf"):
            data = data[3:]
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SnapshotMalformed(f"Snapshot is not UTF-8: {exc}") from exc
    else:
        text = data.lstrip("\ufeff")

    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise SnapshotMalformed(f"Snapshot is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise SnapshotMalformed("Snapshot root must be an object")
    missing = [k for k in REQUIRED_KEYS if k not in raw]
    if missing:
        raise SnapshotMalformed(
            f"Snapshot is missing keys: {', '.join(missing)}"
        )
    if raw["version"] != SNAPSHOT_VERSION:
        raise SnapshotMalformed(
            f"Unsupported snapshot version {raw['version']!r}"
        )
    try:
        snapshot = Snapshot.model_validate(raw)
    except ValidationError as exc:
        raise SnapshotMalformed(f"Invalid snapshot: {exc}") from exc
    logger.debug(
        "Parsed snapshot: %d days, %d items",
        len(snapshot.days),
        sum(len(d.items) for d in snapshot.days),
    )
    return snapshot
