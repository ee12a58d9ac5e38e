"""Local activity store with atomic JSON persistence.

The store keeps the whole catalog in memory (day buckets with their
items, exercise types, unit types) and persists it as a single JSON
document, ``store.json``, in the store directory.

Key design choices:

* **Atomic writes**: ``commit()`` writes to a temp file and then calls
  ``os.replace()`` so readers never see partial data.
* **Loop-thread serialisation**: ``commit_async()`` builds the document
  on the calling thread and only hands the finished dict to a worker
  thread, so a concurrent cycle can never mutate what is being written.
* **Batched commits**: callers mutate freely and commit once per cycle.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator

from ..core.async_utils import run_sync
from ..errors import PersistenceFailed
from .models import (
    ActivityItem,
    DayBucket,
    ExerciseType,
    UnitType,
    normalize_external_id,
)

logger = logging.getLogger(__name__)

STORE_FILENAME = "store.json"
STORE_VERSION = 1


def format_ts(ts: datetime) -> str:
    """Serialise a timestamp losslessly (ISO 8601 with microseconds)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat(timespec="microseconds")


def parse_ts(raw: str) -> datetime:
    """Parse an ISO 8601 timestamp, accepting a trailing ``Z``."""
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class ActivityStore:
    """In-memory activity catalog backed by a JSON file.

    Args:
        path: Path of the JSON document.  ``None`` keeps the store purely
            in memory (``commit()`` becomes a no-op), which tests use.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self.buckets: list[DayBucket] = []
        self.exercise_types: list[ExerciseType] = []
        self.unit_types: list[UnitType] = []

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def open(cls, store_dir: Path) -> ActivityStore:
        """Load the store from *store_dir*, or return an empty one.

        Raises:
            PersistenceFailed: If the document exists but cannot be read.
        """
        store = cls(store_dir / STORE_FILENAME)
        if not store.path.exists():
            logger.debug("No store document at %s, starting empty", store.path)
            return store
        try:
            with open(store.path, encoding="utf-8") as fh:
                document = json.load(fh)
            store.load_document(document)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceFailed(
                f"Cannot read store {store.path}: {exc}"
            ) from exc
        return store

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def items(self) -> Iterator[ActivityItem]:
        """Iterate over every item in every bucket."""
        for bucket in self.buckets:
            yield from bucket.items

    def find_day(self, day: date) -> DayBucket | None:
        for bucket in self.buckets:
            if bucket.date == day:
                return bucket
        return None

    def find_or_create_day(self, day: date) -> DayBucket:
        """Return the first bucket for *day*, creating one if missing."""
        bucket = self.find_day(day)
        if bucket is None:
            bucket = DayBucket(date=day)
            self.buckets.append(bucket)
        return bucket

    def find_items_by_external_id(
        self, external_id: str
    ) -> list[ActivityItem]:
        """Items whose external ID matches, ignoring case and whitespace."""
        wanted = normalize_external_id(external_id)
        return [
            i
            for i in self.items()
            if i.external_id and normalize_external_id(i.external_id) == wanted
        ]

    def has_external_id(self, external_id: str) -> bool:
        return bool(self.find_items_by_external_id(external_id))

    def external_ids(self) -> set[str]:
        """External IDs as stored, in their original spelling."""
        return {i.external_id for i in self.items() if i.external_id}

    def find_item(self, logical_id: str) -> ActivityItem | None:
        for item in self.items():
            if item.logical_id == logical_id:
                return item
        return None

    def find_exercise(self, name: str) -> ExerciseType | None:
        """Case-insensitive exact name lookup."""
        target = name.strip().lower()
        for ex in self.exercise_types:
            if ex.name.strip().lower() == target:
                return ex
        return None

    def find_unit(self, name: str | None) -> UnitType | None:
        if name is None:
            return None
        target = name.strip().lower()
        for unit in self.unit_types:
            if unit.name.strip().lower() == target:
                return unit
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_unit_type(self, unit: UnitType) -> UnitType:
        self.unit_types.append(unit)
        return unit

    def add_exercise_type(self, exercise: ExerciseType) -> ExerciseType:
        self.exercise_types.append(exercise)
        return exercise

    def remove_unit_type(self, unit: UnitType) -> None:
        self.unit_types = [u for u in self.unit_types if u is not unit]

    def remove_exercise_type(self, exercise: ExerciseType) -> None:
        self.exercise_types = [
            e for e in self.exercise_types if e is not exercise
        ]

    def delete_item(self, item: ActivityItem) -> None:
        """Remove *item* from its bucket (and therefore from the store)."""
        if item.bucket is not None:
            item.bucket.remove(item)

    def delete_bucket(self, bucket: DayBucket) -> None:
        self.buckets = [b for b in self.buckets if b is not bucket]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def commit(self) -> None:
        """Persist the store document atomically.

        Raises:
            PersistenceFailed: If the document cannot be written.
        """
        self.write_document(self.to_document())

    async def commit_async(self) -> None:
        """Serialise on the calling thread, write in a worker thread."""
        document = self.to_document()
        await run_sync(self.write_document, document)

    def write_document(self, document: dict) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(document, fh, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                # Clean up temp file on any failure.
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise PersistenceFailed(
                f"Cannot write store {self.path}: {exc}"
            ) from exc
        logger.debug(
            "Committed store: %d days, %d items",
            len(self.buckets),
            sum(len(b.items) for b in self.buckets),
        )

    def to_document(self) -> dict:
        """Build the JSON-ready document for the current state."""
        return {
            "version": STORE_VERSION,
            "units": [
                {
                    "id": u.unit_id,
                    "name": u.name,
                    "abbreviation": u.abbreviation,
                    "step_size": u.step_size,
                    "display_as_integer": u.display_as_integer,
                    "created_at": format_ts(u.created_at),
                }
                for u in self.unit_types
            ],
            "exercises": [
                {
                    "id": e.type_id,
                    "name": e.name,
                    "default_unit_id": (
                        e.default_unit.unit_id if e.default_unit else None
                    ),
                    "base_met": e.base_met,
                    "rep_weight": e.rep_weight,
                    "default_pace_min_per_mi": e.default_pace_min_per_mi,
                    "icon_system_name": e.icon_system_name,
                    "created_at": format_ts(e.created_at),
                }
                for e in self.exercise_types
            ],
            "days": [
                {
                    "id": b.bucket_id,
                    "date": b.date.isoformat(),
                    "notes": b.notes,
                    "created_at": format_ts(b.created_at),
                    "modified_at": format_ts(b.modified_at),
                    "items": [_item_to_dict(i) for i in b.items],
                }
                for b in self.buckets
            ],
        }

    def load_document(self, document: dict) -> None:
        """Replace the in-memory state with *document*."""
        units_by_id: dict[str, UnitType] = {}
        self.unit_types = []
        for raw in document.get("units", []):
            unit = UnitType(
                name=raw["name"],
                abbreviation=raw.get("abbreviation", ""),
                step_size=raw.get("step_size", 1.0),
                display_as_integer=raw.get("display_as_integer", False),
                created_at=parse_ts(raw["created_at"]),
                unit_id=raw["id"],
            )
            units_by_id[unit.unit_id] = unit
            self.unit_types.append(unit)

        exercises_by_id: dict[str, ExerciseType] = {}
        self.exercise_types = []
        for raw in document.get("exercises", []):
            exercise = ExerciseType(
                name=raw["name"],
                default_unit=units_by_id.get(raw.get("default_unit_id") or ""),
                base_met=raw.get("base_met", 4.0),
                rep_weight=raw.get("rep_weight", 0.15),
                default_pace_min_per_mi=raw.get(
                    "default_pace_min_per_mi", 10.0
                ),
                icon_system_name=raw.get("icon_system_name"),
                created_at=parse_ts(raw["created_at"]),
                type_id=raw["id"],
            )
            exercises_by_id[exercise.type_id] = exercise
            self.exercise_types.append(exercise)

        self.buckets = []
        for raw in document.get("days", []):
            bucket = DayBucket(
                date=date.fromisoformat(raw["date"]),
                notes=raw.get("notes"),
                created_at=parse_ts(raw["created_at"]),
                modified_at=parse_ts(raw["modified_at"]),
                bucket_id=raw["id"],
            )
            for raw_item in raw.get("items", []):
                bucket.add(
                    ActivityItem(
                        exercise=exercises_by_id.get(
                            raw_item.get("exercise_id") or ""
                        ),
                        unit=units_by_id.get(raw_item.get("unit_id") or ""),
                        amount=float(raw_item.get("amount", 0.0)),
                        note=raw_item.get("note"),
                        enjoyment=raw_item.get("enjoyment", 3),
                        intensity=raw_item.get("intensity", 3),
                        created_at=parse_ts(raw_item["created_at"]),
                        modified_at=parse_ts(raw_item["modified_at"]),
                        external_id=raw_item.get("external_id"),
                        logical_id=raw_item["logical_id"],
                    )
                )
            self.buckets.append(bucket)


def _item_to_dict(item: ActivityItem) -> dict:
    return {
        "logical_id": item.logical_id,
        "external_id": item.external_id,
        "exercise_id": item.exercise.type_id if item.exercise else None,
        "unit_id": item.unit.unit_id if item.unit else None,
        "amount": item.amount,
        "note": item.note,
        "enjoyment": item.enjoyment,
        "intensity": item.intensity,
        "created_at": format_ts(item.created_at),
        "modified_at": format_ts(item.modified_at),
    }
