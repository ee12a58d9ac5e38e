"""Catalog mapping from provider records to local activity items.

Translates an ``ExternalRecord`` into zero or one ``ActivityItem`` using
the local exercise / unit catalog.

Mapping resolution:

1. **Activity type** -- the provider type maps to a canonical exercise
   name (``walking`` -> ``Walk``; unknown types -> ``Other``).
2. **Exercise match** -- exact name, then normalized equality, then
   substring in either direction, then ``Other``, then the first exercise.
3. **Unit and amount** -- chosen by the user's ``ImportUnitPreference``
   (minutes, miles / kilometers, or the exercise's default unit).
"""

from __future__ import annotations

import logging
import re

from ..store.models import (
    IMPORTED_NOTE,
    ActivityItem,
    ExerciseType,
    UnitType,
    find_best_matching_unit,
)
from ..store.store import ActivityStore
from .models import ExternalRecord, ImportUnitPreference

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.344
METERS_PER_KILOMETER = 1000.0

# Regions that primarily use miles.
MILE_REGIONS = frozenset({"US", "LR", "MM", "GB"})

_ACTIVITY_EXERCISE_MAP: dict[str, str] = {
    "walking": "Walk",
    "running": "Run",
    "cycling": "Cycling",
    "yoga": "Yoga",
    "functionalstrengthtraining": "Other",
    "traditionalstrengthtraining": "Other",
    "coretraining": "Plank",
}

_NON_LETTERS = re.compile(r"[^a-z]")


# ---------------------------------------------------------------------------
# Name handling
# ---------------------------------------------------------------------------


def map_activity_type(activity_type: str) -> str:
    """Return the canonical exercise name for a provider activity type."""
    key = _NON_LETTERS.sub("", activity_type.lower())
    return _ACTIVITY_EXERCISE_MAP.get(key, "Other")


def normalize_name(name: str) -> str:
    """Normalize an exercise name for fuzzy comparison.

    Trims, lowercases, strips everything but ``a-z`` and drops a single
    trailing ``s`` (``"Walks "`` -> ``"walk"``).
    """
    text = _NON_LETTERS.sub("", name.strip().lower())
    if text.endswith("s"):
        text = text[:-1]
    return text


def match_exercise(
    name: str, exercises: list[ExerciseType]
) -> ExerciseType | None:
    """Pick the best catalog exercise for *name*.

    Returns ``None`` only when *exercises* is empty.
    """
    if not exercises:
        return None
    for ex in exercises:
        if ex.name == name:
            return ex
    target = normalize_name(name)
    for ex in exercises:
        if normalize_name(ex.name) == target:
            return ex
    for ex in exercises:
        candidate = normalize_name(ex.name)
        if target in candidate or candidate in target:
            return ex
    other = normalize_name("Other")
    for ex in exercises:
        if normalize_name(ex.name) == other:
            return ex
    return exercises[0]


def prefers_miles(region: str | None) -> bool:
    return (region or "").upper() in MILE_REGIONS


def _unit_named(units: list[UnitType], name: str) -> UnitType | None:
    target = name.lower()
    for unit in units:
        if unit.name.lower() == target:
            return unit
    return None


# ---------------------------------------------------------------------------
# Unit / amount selection
# ---------------------------------------------------------------------------


def choose_unit_and_amount(
    record: ExternalRecord,
    exercise: ExerciseType,
    units: list[UnitType],
    preference: ImportUnitPreference,
    region: str | None = None,
) -> tuple[UnitType, float] | None:
    """Decide which unit and amount an imported record gets.

    Returns ``None`` when the catalog has no units at all.
    """
    if not units:
        return None
    minutes = record.duration / 60.0
    meters = record.distance_meters

    def fallback() -> tuple[UnitType, float]:
        unit = exercise.default_unit or find_best_matching_unit(
            exercise, units
        )
        return unit or units[0], minutes

    if preference == ImportUnitPreference.TIME:
        unit = _unit_named(units, "Minutes")
        if unit is not None:
            return unit, minutes
        return fallback()

    if preference == ImportUnitPreference.DISTANCE:
        if meters is not None:
            use_miles = prefers_miles(region)
            unit = _unit_named(units, "Miles" if use_miles else "Kilometers")
            if unit is not None:
                divisor = METERS_PER_MILE if use_miles else METERS_PER_KILOMETER
                return unit, meters / divisor
        return fallback()

    # auto: follow the exercise's default unit
    default = exercise.default_unit
    if default is None:
        unit = find_best_matching_unit(exercise, units)
        return unit or units[0], minutes
    name = default.name.lower()
    abbr = default.abbreviation.lower()
    if meters is not None and (
        "mile" in name or "kilometer" in name or abbr in ("mi", "km")
    ):
        target = "Miles" if ("mile" in name or abbr == "mi") else "Kilometers"
        unit = _unit_named(units, target)
        if unit is not None:
            divisor = (
                METERS_PER_MILE if target == "Miles" else METERS_PER_KILOMETER
            )
            return unit, meters / divisor
    return default, minutes


# ---------------------------------------------------------------------------
# Record conversion
# ---------------------------------------------------------------------------


class RecordMapper:
    """Convert provider records into activity items for one store.

    Args:
        store: Store whose catalog is used for matching.
        preference: Unit selection preference.
        region: Region code used to choose miles vs kilometers.
    """

    def __init__(
        self,
        store: ActivityStore,
        preference: ImportUnitPreference = ImportUnitPreference.TIME,
        region: str | None = None,
    ) -> None:
        self.store = store
        self.preference = preference
        self.region = region

    def convert(self, record: ExternalRecord) -> ActivityItem | None:
        """Convert *record* to an unattached item, or ``None``."""
        mapped_name = map_activity_type(record.activity_type)
        exercise = match_exercise(mapped_name, self.store.exercise_types)
        if exercise is None:
            logger.debug(
                "No exercise types in catalog; cannot convert %s", record.id
            )
            return None
        choice = choose_unit_and_amount(
            record,
            exercise,
            self.store.unit_types,
            self.preference,
            self.region,
        )
        if choice is None:
            logger.debug("No unit types in catalog; cannot convert %s", record.id)
            return None
        unit, amount = choice
        item = ActivityItem(
            exercise=exercise,
            unit=unit,
            amount=amount,
            note=IMPORTED_NOTE,
            enjoyment=3,
            intensity=3,
            created_at=record.start_time,
            external_id=record.id,
        )
        logger.debug(
            "Converted record %s type=%s -> exercise=%s unit=%s amount=%.3f",
            record.id,
            record.activity_type,
            exercise.name,
            unit.name,
            amount,
        )
        return item
