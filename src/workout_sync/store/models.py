"""Local store entities: day buckets, activity items, and catalog types.

These are plain mutable dataclasses rather than Pydantic models: sync
cycles and import applies mutate them in place and persist once at the
end.  Equality is identity (``eq=False``) so two catalog entries with the
same name stay distinct until entity dedup collapses them.

The item <-> bucket relationship has one write path: ``DayBucket.add()``
and ``DayBucket.remove()``.  Nothing else assigns ``ActivityItem.bucket``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator

# Marker written into the note of every provider-imported item.
IMPORTED_NOTE = "Imported from Health"

RATING_MIN = 1
RATING_MAX = 5


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def clamp_rating(value: int) -> int:
    """Clamp an enjoyment / intensity rating into ``[1, 5]``."""
    return max(RATING_MIN, min(RATING_MAX, int(value)))


def day_of(ts: datetime, tz: tzinfo | None = None) -> date:
    """Return the calendar date of *ts* in *tz* (system local zone if None)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(tz).date()


def _assume_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Naive timestamps from a snapshot or the provider are taken as UTC.
Timestamp = Annotated[datetime, AfterValidator(_assume_utc)]


def normalize_external_id(external_id: str) -> str:
    """Fold an external ID for comparison.  Stored values keep their spelling."""
    return external_id.strip().lower()


def _norm(text: str | None) -> str:
    return (text or "").strip().lower()


def content_hash(
    exercise_name: str,
    unit_name: str | None,
    amount: float,
    enjoyment: int,
    intensity: int,
    created_at: datetime,
) -> str:
    """Approximate identity for items that lack a shared stable ID.

    Exercise and unit names are folded, the amount is fixed to three
    decimals and ``created_at`` is cut to whole epoch seconds (naive
    values count as UTC).
    """
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    parts = [
        _norm(exercise_name),
        _norm(unit_name),
        f"{amount:.3f}",
        str(enjoyment),
        str(intensity),
        str(int(created_at.timestamp())),
    ]
    return "|".join(parts)


class ImportUnitPreference(str, Enum):
    """Unit selection for imported workouts."""

    AUTO = "auto"
    TIME = "time"
    DISTANCE = "distance"


# ---------------------------------------------------------------------------
# Catalog entities
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class UnitType:
    name: str
    abbreviation: str = ""
    step_size: float = 1.0
    display_as_integer: bool = False
    created_at: datetime = field(default_factory=utc_now)
    unit_id: str = field(default_factory=new_id)

    def is_distance(self) -> bool:
        n = self.name.lower()
        a = self.abbreviation.lower()
        return "mile" in n or "kilomet" in n or a in ("mi", "km")

    def is_time(self) -> bool:
        n = self.name.lower()
        a = self.abbreviation.lower()
        return "minute" in n or a == "min"


@dataclass(eq=False)
class ExerciseType:
    name: str
    default_unit: UnitType | None = None
    base_met: float = 4.0
    rep_weight: float = 0.15
    default_pace_min_per_mi: float = 10.0
    icon_system_name: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    type_id: str = field(default_factory=new_id)


def find_best_matching_unit(
    exercise: ExerciseType, units: list[UnitType]
) -> UnitType | None:
    """Find the unit to use for *exercise* among *units*.

    Tries the exercise's default unit by identity, then by trimmed
    case-insensitive name, then by substring in either direction.  Falls
    back to the first unit; ``None`` only when *units* is empty.
    """
    if not units:
        return None
    default = exercise.default_unit
    if default is not None:
        for unit in units:
            if unit is default:
                return unit
        default_name = default.name.strip().lower()
        for unit in units:
            if unit.name.strip().lower() == default_name:
                return unit
        for unit in units:
            if default_name in unit.name.strip().lower():
                return unit
        for unit in units:
            if unit.name.strip().lower() in default_name:
                return unit
    return units[0]


# ---------------------------------------------------------------------------
# Activity items and day buckets
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class ActivityItem:
    """One logged activity.

    ``enjoyment`` and ``intensity`` are clamped to ``[1, 5]`` on every
    assignment, including construction.
    """

    exercise: ExerciseType | None
    unit: UnitType | None = None
    amount: float = 0.0
    note: str | None = None
    enjoyment: int = 3
    intensity: int = 3
    created_at: datetime = field(default_factory=utc_now)
    modified_at: datetime = field(default_factory=utc_now)
    external_id: str | None = None
    logical_id: str = field(default_factory=new_id)
    bucket: DayBucket | None = field(
        default=None, repr=False, compare=False
    )

    def __setattr__(self, name: str, value) -> None:
        if name in ("enjoyment", "intensity"):
            value = clamp_rating(value)
        super().__setattr__(name, value)

    @property
    def is_imported(self) -> bool:
        """True for items that came from the activity provider."""
        if self.external_id is not None:
            return True
        return IMPORTED_NOTE in (self.note or "")

    @property
    def exercise_name(self) -> str:
        return self.exercise.name if self.exercise else ""

    @property
    def unit_name(self) -> str | None:
        return self.unit.name if self.unit else None

    def content_hash(self) -> str:
        return content_hash(
            self.exercise_name,
            self.unit_name,
            self.amount,
            self.enjoyment,
            self.intensity,
            self.created_at,
        )


@dataclass(eq=False)
class DayBucket:
    """All activity items logged on one calendar date."""

    date: date
    items: list[ActivityItem] = field(default_factory=list)
    notes: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    modified_at: datetime = field(default_factory=utc_now)
    bucket_id: str = field(default_factory=new_id)

    def add(self, item: ActivityItem) -> None:
        """Attach *item* to this bucket, detaching it from any previous one."""
        previous = item.bucket
        if previous is not None and previous is not self:
            previous.remove(item)
        if not any(existing is item for existing in self.items):
            self.items.append(item)
        item.bucket = self

    def remove(self, item: ActivityItem) -> None:
        """Detach *item* from this bucket.  No-op if it is not a member."""
        self.items = [i for i in self.items if i is not item]
        if item.bucket is self:
            item.bucket = None

    def contains(self, item: ActivityItem) -> bool:
        return any(existing is item for existing in self.items)
